from decimal import Decimal

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.capabilities.inventory import InventoryCapability, ItemLine
from sagaflow.capabilities.notification import NotificationCapability
from sagaflow.capabilities.payment import PaymentCapability
from sagaflow.capabilities.shipping import ShippingCapability
from sagaflow.pipeline.context import PipelineContext
from sagaflow.pipeline.stages import (
    PipelineDefinition,
    RetryPolicy,
    Stage,
    StageKind,
    StageRegistry,
)

PIPELINE_NAME = "order"

PAYMENT_CHARGED = "PAYMENT_CHARGED"
INVENTORY_RESERVED = "INVENTORY_RESERVED"
SHIPPING_SCHEDULED = "SHIPPING_SCHEDULED"
NOTIFICATION_SENT = "NOTIFICATION_SENT"

# Numbers or decimal strings such as "299.99"
AMOUNT_SCHEMA = {
    "anyOf": [
        {"type": "number"},
        {"type": "string", "pattern": r"^-?\d+(\.\d+)?$"},
    ]
}

ORDER_REQUEST_SCHEMA = {
    "type": "object",
    "required": ["customer_id", "items", "total_amount", "shipping_address"],
    "properties": {
        "customer_id": {"type": "string", "minLength": 1},
        "items": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["product_id", "quantity"],
                "properties": {
                    "product_id": {"type": "string", "minLength": 1},
                    "quantity": {"type": "integer", "minimum": 1},
                    "price": AMOUNT_SCHEMA,
                },
            },
        },
        "total_amount": AMOUNT_SCHEMA,
        "shipping_address": {"type": "string"},
    },
}

SAMPLE_ORDER = {
    "customer_id": "CUST-001",
    "shipping_address": "123 Main Street, City, State 12345",
    "total_amount": "299.99",
    "items": [
        {"product_id": "PRODUCT-001", "quantity": 2, "price": "99.99"},
        {"product_id": "PRODUCT-002", "quantity": 1, "price": "100.01"},
    ],
}


def default_policies() -> dict[str, RetryPolicy]:
    return {
        "PAYMENT": RetryPolicy(
            max_attempts=3, initial_interval=1.0, max_interval=10.0, call_timeout=30.0
        ),
        "INVENTORY": RetryPolicy(max_attempts=3, call_timeout=30.0),
        "SHIPPING": RetryPolicy(max_attempts=3, call_timeout=30.0),
        "NOTIFICATION": RetryPolicy(max_attempts=2, call_timeout=10.0),
    }


def build_order_pipeline(
    payment: PaymentCapability,
    inventory: InventoryCapability,
    shipping: ShippingCapability,
    notification: NotificationCapability,
    policies: dict[str, RetryPolicy] | None = None,
) -> PipelineDefinition:
    retry = {**default_policies(), **(policies or {})}

    async def charge(ctx: PipelineContext) -> CapabilityResult:
        return await payment.charge(
            ctx.request["customer_id"],
            Decimal(str(ctx.request["total_amount"])),
            idempotency_key=f"{ctx.id}:PAYMENT",
        )

    async def reserve(ctx: PipelineContext) -> CapabilityResult:
        items = [
            ItemLine(product_id=i["product_id"], quantity=int(i["quantity"]))
            for i in ctx.request["items"]
        ]
        return await inventory.reserve(items, idempotency_key=f"{ctx.id}:INVENTORY")

    async def schedule(ctx: PipelineContext) -> CapabilityResult:
        return await shipping.schedule(
            ctx.id, ctx.request["shipping_address"], idempotency_key=f"{ctx.id}:SHIPPING"
        )

    async def confirm(ctx: PipelineContext) -> CapabilityResult:
        return await notification.send_confirmation(
            ctx.request["customer_id"], ctx.id, ctx.stage_tokens.get(SHIPPING_SCHEDULED, "")
        )

    async def notify_cancellation(ctx: PipelineContext) -> None:
        await notification.send_cancellation(
            ctx.request["customer_id"], ctx.id, ctx.failure_reason or "unknown"
        )

    stages = [
        Stage(
            name="PAYMENT",
            order=1,
            title="Payment",
            step=PAYMENT_CHARGED,
            forward=charge,
            compensate=payment.refund,
            compensate_action="PAYMENT_REFUNDED",
            retry=retry["PAYMENT"],
        ),
        Stage(
            name="INVENTORY",
            order=2,
            title="Inventory reservation",
            step=INVENTORY_RESERVED,
            forward=reserve,
            compensate=inventory.release,
            compensate_action="INVENTORY_RELEASED",
            retry=retry["INVENTORY"],
        ),
        Stage(
            name="SHIPPING",
            order=3,
            title="Shipping scheduling",
            step=SHIPPING_SCHEDULED,
            forward=schedule,
            compensate=shipping.cancel,
            compensate_action="SHIPPING_CANCELLED",
            retry=retry["SHIPPING"],
        ),
        Stage(
            name="NOTIFICATION",
            order=4,
            title="Order confirmation",
            step=NOTIFICATION_SENT,
            forward=confirm,
            retry=retry["NOTIFICATION"],
            kind=StageKind.BEST_EFFORT,
        ),
    ]
    return PipelineDefinition(
        name=PIPELINE_NAME,
        registry=StageRegistry(stages),
        request_schema=ORDER_REQUEST_SCHEMA,
        failure_notice=notify_cancellation,
    )
