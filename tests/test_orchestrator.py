import asyncio
import dataclasses

from sagaflow.capabilities.inventory import RELEASED
from sagaflow.capabilities.notification import NotificationService
from sagaflow.capabilities.payment import REFUNDED
from sagaflow.pipeline.context import PipelineContext, PipelineStatus
from sagaflow.pipeline.control import ControlPlane
from sagaflow.pipeline.executor import Orchestrator
from sagaflow.pipeline.fault_injection import with_fault_injection
from sagaflow.pipeline.stages import PipelineDefinition, RetryPolicy, StageKind
from sagaflow.workflows.order import build_order_pipeline

from doubles import FAST, FAST_POLICIES, NoticeRecorder, StageDouble, definition, eventually


def _order(
    customer_id: str = "CUST-001",
    product_id: str = "PRODUCT-001",
    quantity: int = 1,
    address: str = "123 Main Street, Springfield",
    total: str = "49.99",
) -> dict:
    return {
        "customer_id": customer_id,
        "items": [{"product_id": product_id, "quantity": quantity, "price": total}],
        "total_amount": total,
        "shipping_address": address,
    }


def _orchestrator(
    pipeline: PipelineDefinition, request: dict, fault_injection: bool = False
) -> Orchestrator:
    ctx = PipelineContext(
        pipeline=pipeline.name, request=request, fault_injection_enabled=fault_injection
    )
    return Orchestrator(pipeline, ctx, compensation_retry=FAST)


# --- Order saga scenarios ---


async def test_happy_path_completes_with_all_tokens(order_pipeline, notifications):
    result = await _orchestrator(order_pipeline, _order()).execute()

    assert result.status is PipelineStatus.COMPLETED
    assert result.completed_steps == [
        "PAYMENT_CHARGED",
        "INVENTORY_RESERVED",
        "SHIPPING_SCHEDULED",
        "NOTIFICATION_SENT",
    ]
    assert result.stage_tokens["PAYMENT_CHARGED"].startswith("TXN-")
    assert result.stage_tokens["SHIPPING_SCHEDULED"].startswith("TRACK-")
    assert result.failure_reason is None
    assert result.compensations == []
    assert len(notifications.sent("ORDER_CONFIRMATION")) == 1
    assert result.finished_at is not None


async def test_payment_rejection_fails_without_compensation(order_pipeline, notifications):
    result = await _orchestrator(order_pipeline, _order(customer_id="CUST-BROKE")).execute()

    assert result.status is PipelineStatus.FAILED
    assert result.completed_steps == []
    assert "Payment failed" in result.failure_reason
    assert "insufficient funds" in result.failure_reason
    # Only the universal failure notice runs
    assert [c.stage for c in result.compensations] == ["failure_notice"]
    assert len(notifications.sent("ORDER_CANCELLATION")) == 1


async def test_inventory_rejection_refunds_payment(order_pipeline, payment):
    result = await _orchestrator(order_pipeline, _order(product_id="SOLD-OUT")).execute()

    assert result.status is PipelineStatus.FAILED
    assert result.completed_steps == ["PAYMENT_CHARGED"]
    assert "out of stock" in result.failure_reason
    assert [c.action for c in result.compensations] == ["PAYMENT_REFUNDED", "NOTIFY"]
    txn = result.stage_tokens["PAYMENT_CHARGED"]
    assert result.compensations[0].token == txn
    assert payment.get(txn).status == REFUNDED


async def test_shipping_rejection_compensates_in_reverse(order_pipeline, payment, inventory):
    result = await _orchestrator(
        order_pipeline, _order(address="1 Harbour Road, Atlantis", quantity=3)
    ).execute()

    assert result.status is PipelineStatus.FAILED
    assert result.completed_steps == ["PAYMENT_CHARGED", "INVENTORY_RESERVED"]
    assert result.failure_reason.startswith("Shipping scheduling failed")
    assert [c.action for c in result.compensations] == [
        "INVENTORY_RELEASED",
        "PAYMENT_REFUNDED",
        "NOTIFY",
    ]
    assert all(c.succeeded for c in result.compensations)
    assert inventory.get(result.stage_tokens["INVENTORY_RESERVED"]).status == RELEASED
    assert inventory.available("PRODUCT-001") == 10
    assert payment.get(result.stage_tokens["PAYMENT_CHARGED"]).status == REFUNDED


async def test_best_effort_notification_failure_still_completes(payment, inventory, shipping):
    class DownNotifications(NotificationService):
        async def send_confirmation(self, customer_id, order_id, tracking_number):
            raise ConnectionError("smtp unreachable")

    pipeline = build_order_pipeline(
        payment, inventory, shipping, DownNotifications(), policies=FAST_POLICIES
    )
    result = await _orchestrator(pipeline, _order()).execute()

    assert result.status is PipelineStatus.COMPLETED
    assert result.completed_steps == [
        "PAYMENT_CHARGED",
        "INVENTORY_RESERVED",
        "SHIPPING_SCHEDULED",
    ]
    assert result.compensations == []
    assert payment.get(result.stage_tokens["PAYMENT_CHARGED"]).status != REFUNDED


async def test_injected_failure_routes_through_compensation(order_pipeline, shipping):
    orch = _orchestrator(with_fault_injection(order_pipeline), _order(), fault_injection=True)
    ControlPlane(orch).inject_failure("SHIPPING")

    result = await orch.execute()

    assert result.status is PipelineStatus.FAILED
    assert result.failure_reason == "Shipping scheduling failed: Simulated shipping failure"
    assert result.completed_steps == ["PAYMENT_CHARGED", "INVENTORY_RESERVED"]
    assert [c.action for c in result.compensations][:2] == [
        "INVENTORY_RELEASED",
        "PAYMENT_REFUNDED",
    ]


async def test_execute_after_terminal_returns_same_result(order_pipeline, payment):
    orch = _orchestrator(order_pipeline, _order())
    first = await orch.execute()
    second = await orch.execute()

    assert second.status is PipelineStatus.COMPLETED
    assert second.completed_steps == first.completed_steps
    assert len(payment._store) == 1


# --- Cancellation ---


async def test_cancel_before_start_yields_no_steps():
    a = StageDouble("A")
    notice = NoticeRecorder()
    orch = _orchestrator(definition(a.stage(1), notice=notice), {})
    ControlPlane(orch).request_cancel()

    result = await orch.execute()

    assert result.status is PipelineStatus.CANCELLED
    assert result.completed_steps == []
    assert result.failure_reason == "Cancellation requested"
    assert a.calls == 0
    assert [c.stage for c in result.compensations] == ["failure_notice"]
    assert notice.reasons == ["Cancellation requested"]


async def test_cancel_observed_at_next_stage_boundary():
    gate = asyncio.Event()
    a = StageDouble("A", block=gate)
    b = StageDouble("B")
    orch = _orchestrator(definition(a.stage(1), b.stage(2)), {})
    control = ControlPlane(orch)

    task = asyncio.create_task(orch.execute())
    await a.started.wait()
    control.request_cancel()
    # The in-flight call is never interrupted
    assert orch.ctx.status is PipelineStatus.RUNNING
    gate.set()
    result = await task

    assert result.status is PipelineStatus.CANCELLED
    assert result.completed_steps == ["A_DONE"]
    assert b.calls == 0
    assert a.compensated == [a.token]


async def test_cancel_is_idempotent_and_ignored_after_terminal():
    a = StageDouble("A")
    orch = _orchestrator(definition(a.stage(1)), {})
    control = ControlPlane(orch)
    result = await orch.execute()

    control.request_cancel()
    control.request_cancel()

    assert result.status is PipelineStatus.COMPLETED
    assert orch.ctx.cancel_requested is False
    assert control.get_status() is PipelineStatus.COMPLETED


# --- Compensation semantics ---


async def test_compensation_failure_does_not_stop_remaining():
    a = StageDouble("A")
    b = StageDouble("B", fail_compensation=True)
    c = StageDouble("C", outcomes=["reject"])
    notice = NoticeRecorder()
    result = await _orchestrator(
        definition(a.stage(1), b.stage(2), c.stage(3), notice=notice), {}
    ).execute()

    assert result.status is PipelineStatus.FAILED
    assert result.failure_reason == "C failed: c said no"
    assert [(r.stage, r.succeeded) for r in result.compensations] == [
        ("B", False),
        ("A", True),
        ("failure_notice", True),
    ]
    assert "undo endpoint unavailable" in result.compensations[0].error
    assert a.compensated == [a.token]
    assert notice.reasons == ["C failed: c said no"]


async def test_failed_stage_is_never_recorded():
    a = StageDouble("A")
    b = StageDouble("B", outcomes=["reject"])
    orch = _orchestrator(definition(a.stage(1), b.stage(2)), {})
    result = await orch.execute()

    assert result.completed_steps == ["A_DONE"]
    assert b.compensated == []


async def test_best_effort_stage_never_triggers_compensation():
    a = StageDouble("A")
    n = StageDouble("N", outcomes=["reject"])
    result = await _orchestrator(
        definition(a.stage(1), n.stage(2, kind=StageKind.BEST_EFFORT)), {}
    ).execute()

    assert result.status is PipelineStatus.COMPLETED
    assert result.completed_steps == ["A_DONE"]
    assert a.compensated == []


async def test_planned_compensations_follow_completed_steps():
    a = StageDouble("A")
    b = StageDouble("B", outcomes=["reject"])
    notice = NoticeRecorder()
    orch = _orchestrator(definition(a.stage(1), b.stage(2), notice=notice), {})
    assert orch.planned_compensations() == ["NOTIFY"]

    await orch.execute()

    assert orch.planned_compensations() == ["A_UNDONE", "NOTIFY"]


# --- Retries ---


async def test_transient_errors_are_retried():
    a = StageDouble("A", outcomes=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
    result = await _orchestrator(definition(a.stage(1)), {}).execute()

    assert result.status is PipelineStatus.COMPLETED
    assert a.calls == 3


async def test_exhausted_retries_become_infrastructure_failure():
    a = StageDouble("A")
    b = StageDouble("B", outcomes=[ConnectionError("reset")] * 3)
    result = await _orchestrator(definition(a.stage(1), b.stage(2)), {}).execute()

    assert result.status is PipelineStatus.FAILED
    assert b.calls == 3
    assert result.failure_reason.startswith("B failed:")
    assert "after 3 attempts" in result.failure_reason
    assert a.compensated == [a.token]


async def test_business_rejection_is_not_retried():
    a = StageDouble("A", outcomes=["reject", "ok"])
    result = await _orchestrator(definition(a.stage(1)), {}).execute()

    assert result.status is PipelineStatus.FAILED
    assert a.calls == 1


async def test_single_attempt_policy():
    a = StageDouble("A", outcomes=[ConnectionError("reset")])
    stage = dataclasses.replace(a.stage(1), retry=RetryPolicy.no_retry(call_timeout=1.0))
    pipeline = definition(stage)
    result = await _orchestrator(pipeline, {}).execute()

    assert result.status is PipelineStatus.FAILED
    assert a.calls == 1


async def test_concurrent_instances_are_independent(order_pipeline):
    orchestrators = [
        _orchestrator(order_pipeline, _order()),
        _orchestrator(order_pipeline, _order(customer_id="CUST-BROKE")),
        _orchestrator(order_pipeline, _order()),
    ]
    results = await asyncio.gather(*(o.execute() for o in orchestrators))

    assert [r.status for r in results] == [
        PipelineStatus.COMPLETED,
        PipelineStatus.FAILED,
        PipelineStatus.COMPLETED,
    ]
    assert len({r.instance_id for r in results}) == 3


async def test_status_visible_while_running():
    gate = asyncio.Event()
    a = StageDouble("A", block=gate)
    orch = _orchestrator(definition(a.stage(1)), {})
    control = ControlPlane(orch)

    task = asyncio.create_task(orch.execute())
    await eventually(lambda: a.started.is_set())
    assert control.get_status() is PipelineStatus.RUNNING
    assert control.get_metrics()["current_stage"] == "A"
    gate.set()
    await task
    assert control.get_completed_steps() == ["A_DONE"]
