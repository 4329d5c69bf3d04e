import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import structlog

from sagaflow.capabilities.base import CapabilityResult

log = structlog.get_logger()

HISTORY_LIMIT = 100
ADMIN_RECIPIENT = "admin@example.com"
REVIEWERS_RECIPIENT = "reviewers@example.com"


class NotificationCapability(Protocol):
    async def send_confirmation(
        self, customer_id: str, order_id: str, tracking_number: str
    ) -> CapabilityResult: ...

    async def send_cancellation(self, customer_id: str, order_id: str, reason: str) -> None: ...

    async def send_review_required(self, document_id: int, document_name: str) -> None: ...

    async def send_processing_complete(
        self, document_id: int, file_name: str, approved: bool
    ) -> CapabilityResult: ...

    async def send_processing_failed(
        self, document_id: int | None, file_name: str, error: str
    ) -> None: ...


@dataclass(frozen=True)
class NotificationRecord:
    notification_id: str
    recipient: str
    kind: str
    subject: str
    message: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationService:
    """Records outgoing notifications; delivery itself is a log line."""

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._history: deque[NotificationRecord] = deque(maxlen=history_limit)

    @property
    def history(self) -> list[NotificationRecord]:
        return list(self._history)

    def sent(self, kind: str) -> list[NotificationRecord]:
        return [n for n in self._history if n.kind == kind]

    def _send(self, recipient: str, kind: str, subject: str, message: str) -> NotificationRecord:
        record = NotificationRecord(
            notification_id=f"NOTE-{uuid.uuid4()}",
            recipient=recipient,
            kind=kind,
            subject=subject,
            message=message,
        )
        self._history.append(record)
        log.info("notification_sent", recipient=recipient, kind=kind, subject=subject)
        return record

    async def send_confirmation(
        self, customer_id: str, order_id: str, tracking_number: str
    ) -> CapabilityResult:
        record = self._send(
            customer_id,
            "ORDER_CONFIRMATION",
            f"Order {order_id} confirmed",
            f"Order Confirmed! Your order {order_id} has been confirmed and will be "
            f"shipped soon. Track your package with: {tracking_number}",
        )
        return CapabilityResult.ok(record.notification_id, "Confirmation sent")

    async def send_cancellation(self, customer_id: str, order_id: str, reason: str) -> None:
        self._send(
            customer_id,
            "ORDER_CANCELLATION",
            f"Order {order_id} cancelled",
            f"Order Cancelled: Your order {order_id} has been cancelled. Reason: {reason}. "
            "Any charges will be refunded within 3-5 business days.",
        )

    async def send_review_required(self, document_id: int, document_name: str) -> None:
        self._send(
            REVIEWERS_RECIPIENT,
            "REVIEW_REQUIRED",
            f"Document Review Required: {document_name}",
            f"A new document requires review.\n\nDocument ID: {document_id}\n"
            f"Document Name: {document_name}",
        )

    async def send_processing_complete(
        self, document_id: int, file_name: str, approved: bool
    ) -> CapabilityResult:
        status = "Approved" if approved else "Rejected"
        record = self._send(
            ADMIN_RECIPIENT,
            "PROCESSING_COMPLETE",
            f"Document Processing Complete: {file_name} ({status})",
            f"Document processing has been completed.\n\nDocument ID: {document_id}\n"
            f"File Name: {file_name}\nReview Status: {status}",
        )
        return CapabilityResult.ok(record.notification_id, "Completion notice sent")

    async def send_processing_failed(
        self, document_id: int | None, file_name: str, error: str
    ) -> None:
        self._send(
            ADMIN_RECIPIENT,
            "PROCESSING_FAILED",
            f"Document Processing Failed: {file_name}",
            f"Document processing has failed.\n\nDocument ID: {document_id}\n"
            f"File Name: {file_name}\nError: {error}",
        )

