import secrets
from typing import Protocol

import structlog

from sagaflow.capabilities.notification import NotificationCapability
from sagaflow.capabilities.storage import DocumentStorage

log = structlog.get_logger()


class ReviewCapability(Protocol):
    async def request_review(self, document_id: int, document_name: str) -> str: ...


class ReviewDesk:
    """Opens a review task and tells reviewers about it.

    Returns the correlation token a reviewer must echo back with their decision.
    The decision itself arrives later through the pipeline's submit_decision update.
    """

    def __init__(self, storage: DocumentStorage, notifications: NotificationCapability) -> None:
        self._storage = storage
        self._notifications = notifications

    async def request_review(self, document_id: int, document_name: str) -> str:
        token = _review_token(document_id)
        await self._storage.create_review(document_id, token)
        await self._notifications.send_review_required(document_id, document_name)
        log.info("review_requested", document_id=document_id, token=token[:12] + "...")
        return token


def _review_token(document_id: int) -> str:
    return f"review-{document_id}-{secrets.token_hex(12)}"
