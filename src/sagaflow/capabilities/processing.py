import asyncio
import hashlib
from collections.abc import Callable
from typing import Protocol

import structlog

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.capabilities.storage import DocumentStorage
from sagaflow.pipeline.context import Decision

log = structlog.get_logger()

ProgressReporter = Callable[[str], None]

BYTES_PER_PAGE = 10_000

# (document type, keywords, confidence); first match wins
CLASSIFICATION_RULES: list[tuple[str, tuple[str, ...], float]] = [
    ("INVOICE", ("invoice", "bill", "payment"), 0.92),
    ("CONTRACT", ("contract", "agreement", "terms"), 0.88),
    ("REPORT", ("report", "analysis", "summary"), 0.85),
]
FALLBACK_TYPE = ("LETTER", 0.75)
TAG_KEYWORDS = ("urgent", "confidential", "financial", "legal")


class ProcessingCapability(Protocol):
    async def extract_metadata(self, document_id: int) -> CapabilityResult: ...

    async def perform_ocr(
        self, document_id: int, progress: ProgressReporter | None = None
    ) -> CapabilityResult: ...

    async def classify(self, document_id: int, text: str) -> CapabilityResult: ...

    async def finalize(self, document_id: int, decision: Decision) -> CapabilityResult: ...


def classify_text(text: str) -> tuple[str, float, list[str]]:
    lowered = text.lower()
    for document_type, keywords, confidence in CLASSIFICATION_RULES:
        if any(k in lowered for k in keywords):
            break
    else:
        document_type, confidence = FALLBACK_TYPE
    tags = [t for t in TAG_KEYWORDS if t in lowered]
    return document_type, confidence, tags


class DocumentProcessor:
    def __init__(self, storage: DocumentStorage, page_delay_seconds: float = 0.0) -> None:
        self._storage = storage
        self._page_delay = page_delay_seconds

    async def extract_metadata(self, document_id: int) -> CapabilityResult:
        content = await self._storage.retrieve(document_id)
        text = content.decode("utf-8", errors="ignore")
        metadata = {
            "size_bytes": len(content),
            "page_count": max(1, len(content) // BYTES_PER_PAGE),
            "word_count": len(text.split()),
            "checksum": hashlib.sha256(content).hexdigest(),
            "language": "en",
        }
        log.info("metadata_extracted", document_id=document_id, **metadata)
        return CapabilityResult.ok(metadata["checksum"], "Metadata extracted", **metadata)

    async def perform_ocr(
        self, document_id: int, progress: ProgressReporter | None = None
    ) -> CapabilityResult:
        report = progress or (lambda message: None)
        content = await self._storage.retrieve(document_id)
        pages = max(1, len(content) // BYTES_PER_PAGE)
        text = content.decode("utf-8", errors="ignore")

        report("Starting OCR processing")
        for page in range(1, pages + 1):
            report(f"Processing page {page}/{pages}")
            if self._page_delay:
                await asyncio.sleep(self._page_delay)
        report("OCR processing completed")

        confidence = 0.85 if text.strip() else 0.0
        await self._storage.record_ocr(document_id, text, confidence)
        log.info("ocr_completed", document_id=document_id, pages=pages, confidence=confidence)
        return CapabilityResult.ok(
            f"ocr-{document_id}", "OCR completed", text=text, confidence=confidence, pages=pages
        )

    async def classify(self, document_id: int, text: str) -> CapabilityResult:
        document_type, confidence, tags = classify_text(text)
        classification = {
            "document_type": document_type,
            "confidence": confidence,
            "tags": tags,
        }
        await self._storage.record_classification(document_id, document_type, classification)
        log.info(
            "document_classified",
            document_id=document_id,
            document_type=document_type,
            confidence=confidence,
        )
        return CapabilityResult.ok(document_type, "Document classified", **classification)

    async def finalize(self, document_id: int, decision: Decision) -> CapabilityResult:
        final_status = "APPROVED" if decision.approved else "REJECTED"
        await self._storage.update_status(document_id, final_status)
        log.info("document_finalized", document_id=document_id, status=final_status)
        return CapabilityResult.ok(final_status, "Document finalized")
