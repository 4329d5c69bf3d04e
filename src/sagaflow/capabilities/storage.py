from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.config import settings
from sagaflow.models.document import Document, DocumentReview
from sagaflow.pipeline.context import Decision

log = structlog.get_logger()

DELETED = "DELETED"


class StorageCapability(Protocol):
    async def persist(
        self, instance_id: str, name: str, mime_type: str, content: bytes
    ) -> CapabilityResult: ...

    async def update_status(self, document_id: int, status: str) -> None: ...

    async def retrieve(self, document_id: int) -> bytes: ...

    async def delete(self, document_id: int) -> None: ...


class DocumentStorage:
    """Relational document store. Every method opens its own session."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        max_size_bytes: int | None = None,
    ) -> None:
        self._sessions = sessions
        self._max_size = max_size_bytes or settings.max_document_size_bytes

    async def persist(
        self, instance_id: str, name: str, mime_type: str, content: bytes
    ) -> CapabilityResult:
        if not content:
            return CapabilityResult.rejected("Document content cannot be empty")
        if len(content) > self._max_size:
            return CapabilityResult.rejected(
                f"Document size exceeds {self._max_size // (1024 * 1024)}MB limit"
            )

        async with self._sessions() as session:
            # Re-delivered persist calls for the same instance return the original row.
            existing = await session.execute(
                select(Document.id).where(Document.instance_id == instance_id)
            )
            document_id = existing.scalar_one_or_none()
            if document_id is not None:
                return CapabilityResult.ok(str(document_id), "Document already stored")

            doc = Document(
                instance_id=instance_id,
                name=name,
                mime_type=mime_type,
                size_bytes=len(content),
                content=content,
                status="UPLOADED",
            )
            session.add(doc)
            await session.commit()
            document_id = doc.id

        log.info("document_stored", document_id=document_id, name=name, mime_type=mime_type)
        return CapabilityResult.ok(str(document_id), "Document stored")

    async def update_status(self, document_id: int, status: str) -> None:
        # A deleted document keeps its DELETED status.
        async with self._sessions() as session:
            result = await session.execute(
                update(Document)
                .where(Document.id == document_id, Document.deleted_at.is_(None))
                .values(status=status)
            )
            await session.commit()
        if result.rowcount:
            log.info("document_status_updated", document_id=document_id, status=status)

    async def retrieve(self, document_id: int) -> bytes:
        doc = await self.get(document_id)
        if doc is None or doc.deleted_at is not None:
            raise LookupError(f"Document {document_id} not found")
        return doc.content

    async def delete(self, document_id: int) -> None:
        """Soft-delete the document and cancel any review still open for it."""
        doc = await self.get(document_id)
        if doc is None or doc.deleted_at is not None:
            return
        now = datetime.now(timezone.utc)
        async with self._sessions() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(status=DELETED, deleted_at=now)
            )
            await session.execute(
                update(DocumentReview)
                .where(
                    DocumentReview.document_id == document_id,
                    DocumentReview.review_status == "PENDING",
                )
                .values(review_status="CANCELLED", completed_at=now)
            )
            await session.commit()
        log.info("document_deleted", document_id=document_id)

    async def get(self, document_id: int) -> Document | None:
        async with self._sessions() as session:
            result = await session.execute(select(Document).where(Document.id == document_id))
            return result.scalar_one_or_none()

    async def record_ocr(self, document_id: int, text: str, confidence: float) -> None:
        await self._update(document_id, ocr_text=text, ocr_confidence=confidence)

    async def record_classification(
        self, document_id: int, document_type: str, classification: dict[str, Any]
    ) -> None:
        await self._update(
            document_id, document_type=document_type, classification=classification
        )

    async def record_priority(self, document_id: int, priority: str) -> None:
        await self._update(document_id, priority=priority)

    async def create_review(self, document_id: int, correlation_token: str) -> None:
        async with self._sessions() as session:
            existing = await session.execute(
                select(DocumentReview.id).where(
                    DocumentReview.correlation_token == correlation_token
                )
            )
            if existing.scalar_one_or_none() is not None:
                return
            session.add(
                DocumentReview(document_id=document_id, correlation_token=correlation_token)
            )
            await session.commit()

    async def complete_review(self, correlation_token: str, decision: Decision) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(DocumentReview)
                .where(
                    DocumentReview.correlation_token == correlation_token,
                    DocumentReview.review_status == "PENDING",
                )
                .values(
                    review_status="COMPLETED",
                    approved=decision.approved,
                    comments=decision.comments,
                    completed_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def pending_reviews(self) -> list[dict[str, Any]]:
        async with self._sessions() as session:
            result = await session.execute(
                select(DocumentReview, Document)
                .join(Document, DocumentReview.document_id == Document.id)
                .where(DocumentReview.review_status == "PENDING")
                .order_by(DocumentReview.assigned_at)
            )
            return [
                {
                    "document_id": doc.id,
                    "instance_id": doc.instance_id,
                    "file_name": doc.name,
                    "mime_type": doc.mime_type,
                    "size_bytes": doc.size_bytes,
                    "correlation_token": review.correlation_token,
                    "assigned_at": review.assigned_at,
                }
                for review, doc in result.all()
            ]

    async def _update(self, document_id: int, **values: Any) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(Document).where(Document.id == document_id).values(**values)
            )
            await session.commit()
