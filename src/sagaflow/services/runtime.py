from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sagaflow.capabilities.inventory import StockInventoryService
from sagaflow.capabilities.notification import NotificationService
from sagaflow.capabilities.payment import LedgerPaymentService
from sagaflow.capabilities.processing import DocumentProcessor
from sagaflow.capabilities.review import ReviewDesk
from sagaflow.capabilities.shipping import CarrierShippingService
from sagaflow.capabilities.storage import DocumentStorage
from sagaflow.database import session_factory
from sagaflow.pipeline.stages import RetryPolicy
from sagaflow.services.instance_manager import InstanceManager
from sagaflow.workflows.document import build_document_pipeline
from sagaflow.workflows.order import build_order_pipeline


@dataclass
class Runtime:
    """Capability implementations and the instance manager they are registered with."""

    manager: InstanceManager
    payment: LedgerPaymentService
    inventory: StockInventoryService
    shipping: CarrierShippingService
    notifications: NotificationService
    storage: DocumentStorage
    processor: DocumentProcessor


def build_runtime(
    sessions: async_sessionmaker[AsyncSession],
    policies: dict[str, RetryPolicy] | None = None,
    review_timeout_seconds: float | None = None,
    compensation_retry: RetryPolicy | None = None,
) -> Runtime:
    notifications = NotificationService()
    storage = DocumentStorage(sessions)
    processor = DocumentProcessor(storage)
    runtime = Runtime(
        manager=InstanceManager(compensation_retry=compensation_retry),
        payment=LedgerPaymentService(),
        inventory=StockInventoryService(),
        shipping=CarrierShippingService(),
        notifications=notifications,
        storage=storage,
        processor=processor,
    )
    runtime.manager.register(
        build_order_pipeline(
            runtime.payment,
            runtime.inventory,
            runtime.shipping,
            notifications,
            policies=policies,
        )
    )
    runtime.manager.register(
        build_document_pipeline(
            storage,
            processor,
            ReviewDesk(storage, notifications),
            notifications,
            review_timeout_seconds=review_timeout_seconds,
            policies=policies,
        )
    )
    return runtime


_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(session_factory)
    return _runtime
