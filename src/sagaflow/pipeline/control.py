from typing import Any

import pydantic
import structlog

from sagaflow.errors import FaultInjectionDisabledError, ValidationError
from sagaflow.pipeline.context import (
    CompensationRecord,
    Decision,
    PipelineContext,
    PipelineStatus,
    Priority,
    utcnow,
)
from sagaflow.pipeline.executor import Orchestrator

log = structlog.get_logger()


class ControlPlane:
    """Query, Signal and Update handlers for one running instance.

    Queries never mutate. Signals flip a single flag and return nothing.
    Updates run their validator first; a rejected update leaves the context
    untouched. The orchestrator only acts on signals and updates at its next
    stage boundary or gate wait.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator
        self._ctx: PipelineContext = orchestrator.ctx

    # --- Queries ---

    def get_status(self) -> PipelineStatus:
        return self._ctx.status

    def get_completed_steps(self) -> list[str]:
        return self._ctx.step_names

    def get_failure_reason(self) -> str | None:
        return self._ctx.failure_reason

    def get_priority(self) -> Priority:
        return self._ctx.priority

    def get_decision(self) -> Decision | None:
        return self._ctx.decision or self._ctx.pending_decision

    def get_compensations(self) -> list[CompensationRecord]:
        return list(self._ctx.compensations)

    def get_planned_compensations(self) -> list[str]:
        return self._orchestrator.planned_compensations()

    def get_metrics(self) -> dict[str, Any]:
        ctx = self._ctx
        completed = len(ctx.stage_durations_ms)
        progress = (completed * 100.0 / ctx.total_stages) if ctx.total_stages else 0.0
        return {
            "instance_id": ctx.id,
            "status": ctx.status.value,
            "current_stage": ctx.current_stage,
            "priority": ctx.priority.value,
            "stage_durations_ms": dict(ctx.stage_durations_ms),
            "completed_stages": completed,
            "total_stages": ctx.total_stages,
            "progress_percentage": round(progress, 1),
            "progress_message": ctx.progress_message,
            "started_at": ctx.started_at,
            "last_update": utcnow(),
        }

    def get_info(self) -> dict[str, Any]:
        ctx = self._ctx
        return {
            "instance_id": ctx.id,
            "pipeline": ctx.pipeline,
            "status": ctx.status.value,
            "priority": ctx.priority.value,
            "completed_steps": ctx.step_names,
            "failure_reason": ctx.failure_reason,
            "awaiting_decision": ctx.status is PipelineStatus.AWAITING_DECISION,
            "gate_token": ctx.gate_token,
        }

    # --- Signals ---

    def request_cancel(self) -> None:
        ctx = self._ctx
        if ctx.status.is_terminal or ctx.cancel_requested:
            return
        ctx.cancel_requested = True
        self._orchestrator.substrate.notify()
        log.info("cancel_requested", instance_id=ctx.id, status=ctx.status.value)

    def inject_failure(self, stage_name: str) -> None:
        ctx = self._ctx
        if not ctx.fault_injection_enabled:
            raise FaultInjectionDisabledError(ctx.id)
        if ctx.status.is_terminal:
            return
        ctx.injected_failures.add(stage_name)
        log.info("failure_injection_set", instance_id=ctx.id, stage=stage_name)

    # --- Updates ---

    def validate_priority(self, value: Any) -> Priority:
        if value is None:
            raise ValidationError("set_priority", "Priority cannot be null", field="priority")
        try:
            priority = Priority(value.upper() if isinstance(value, str) else value)
        except ValueError:
            raise ValidationError(
                "set_priority", f"Unknown priority: {value!r}", field="priority"
            ) from None
        if self._ctx.status.is_terminal:
            raise ValidationError(
                "set_priority",
                f"Cannot update priority of a {self._ctx.status.value} pipeline",
            )
        return priority

    def set_priority(self, value: Any) -> Priority:
        """Apply a validated priority change and return the previous priority."""
        priority = self.validate_priority(value)
        previous = self._ctx.priority
        self._ctx.priority = priority
        log.info(
            "priority_updated",
            instance_id=self._ctx.id,
            old=previous.value,
            new=priority.value,
        )
        return previous

    def validate_decision(self, payload: Any) -> Decision:
        ctx = self._ctx
        if payload is None:
            raise ValidationError("submit_decision", "Decision cannot be null")
        if isinstance(payload, Decision):
            decision = payload
        else:
            try:
                decision = Decision.model_validate(payload)
            except pydantic.ValidationError as e:
                raise ValidationError(
                    "submit_decision", f"Malformed decision: {e.errors()[0]['msg']}"
                ) from None
        if not decision.comments:
            raise ValidationError(
                "submit_decision", "Review comments are required", field="comments"
            )
        if ctx.status.is_terminal:
            raise ValidationError(
                "submit_decision", f"Pipeline is already {ctx.status.value}"
            )
        if ctx.status is not PipelineStatus.AWAITING_DECISION:
            raise ValidationError("submit_decision", "Pipeline is not awaiting a decision")
        if ctx.pending_decision is not None:
            raise ValidationError("submit_decision", "A decision has already been submitted")
        if decision.correlation_token is not None and decision.correlation_token != ctx.gate_token:
            raise ValidationError(
                "submit_decision", "Correlation token does not match", field="correlation_token"
            )
        return decision

    def submit_decision(self, payload: Any) -> Decision:
        decision = self.validate_decision(payload)
        self._ctx.pending_decision = decision
        self._orchestrator.substrate.notify()
        log.info(
            "decision_submitted",
            instance_id=self._ctx.id,
            approved=decision.approved,
        )
        return decision
