import base64
import binascii

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.capabilities.notification import NotificationCapability
from sagaflow.capabilities.processing import ProcessingCapability
from sagaflow.capabilities.review import ReviewCapability
from sagaflow.capabilities.storage import DocumentStorage
from sagaflow.config import settings
from sagaflow.pipeline.context import Decision, PipelineContext
from sagaflow.pipeline.stages import (
    GateConfig,
    PipelineDefinition,
    RetryPolicy,
    Stage,
    StageKind,
    StageRegistry,
)

PIPELINE_NAME = "document"

DOCUMENT_STORED = "DOCUMENT_STORED"
METADATA_EXTRACTED = "METADATA_EXTRACTED"
OCR_COMPLETED = "OCR_COMPLETED"
DOCUMENT_CLASSIFIED = "DOCUMENT_CLASSIFIED"
DOCUMENT_FINALIZED = "DOCUMENT_FINALIZED"
NOTIFICATION_SENT = "NOTIFICATION_SENT"

REVIEW_TIMED_OUT = "Review timed out"

DOCUMENT_REQUEST_SCHEMA = {
    "type": "object",
    "required": ["file_name", "mime_type", "content_base64"],
    "properties": {
        "file_name": {"type": "string", "minLength": 1},
        "mime_type": {"type": "string", "minLength": 1},
        "content_base64": {"type": "string"},
        "uploaded_by": {"type": ["string", "null"]},
    },
}


def document_id(ctx: PipelineContext) -> int | None:
    """Storage id of the instance's document, once persist has completed."""
    token = ctx.stage_tokens.get(DOCUMENT_STORED)
    return int(token) if token else None


def timed_out_decision() -> Decision:
    return Decision(approved=False, comments=REVIEW_TIMED_OUT)


def default_policies() -> dict[str, RetryPolicy]:
    return {
        "STORAGE": RetryPolicy(max_attempts=3, call_timeout=30.0),
        "METADATA": RetryPolicy(max_attempts=3, call_timeout=60.0),
        "OCR": RetryPolicy(max_attempts=2, call_timeout=300.0),
        "CLASSIFICATION": RetryPolicy(max_attempts=3, call_timeout=60.0),
        "REVIEW": RetryPolicy.no_retry(call_timeout=30.0),
        "FINALIZE": RetryPolicy(max_attempts=3, call_timeout=60.0),
        "NOTIFY": RetryPolicy(max_attempts=2, call_timeout=10.0),
    }


def build_document_pipeline(
    storage: DocumentStorage,
    processor: ProcessingCapability,
    review: ReviewCapability,
    notification: NotificationCapability,
    review_timeout_seconds: float | None = None,
    policies: dict[str, RetryPolicy] | None = None,
) -> PipelineDefinition:
    retry = {**default_policies(), **(policies or {})}
    timeout = (
        settings.review_timeout_seconds
        if review_timeout_seconds is None
        else review_timeout_seconds
    )

    async def persist(ctx: PipelineContext) -> CapabilityResult:
        try:
            content = base64.b64decode(ctx.request["content_base64"], validate=True)
        except binascii.Error:
            return CapabilityResult.rejected("Document content is not valid base64")
        return await storage.persist(
            ctx.id, ctx.request["file_name"], ctx.request["mime_type"], content
        )

    async def remove(token: str) -> None:
        await storage.delete(int(token))

    async def extract_metadata(ctx: PipelineContext) -> CapabilityResult:
        return await processor.extract_metadata(document_id(ctx))

    async def ocr(ctx: PipelineContext) -> CapabilityResult:
        return await processor.perform_ocr(document_id(ctx), progress=ctx.report_progress)

    async def classify(ctx: PipelineContext) -> CapabilityResult:
        return await processor.classify(document_id(ctx), ctx.outputs["OCR"]["text"])

    async def request_review(ctx: PipelineContext) -> str:
        return await review.request_review(document_id(ctx), ctx.request["file_name"])

    async def finalize(ctx: PipelineContext) -> CapabilityResult:
        if ctx.gate_token:
            await storage.complete_review(ctx.gate_token, ctx.decision)
        return await processor.finalize(document_id(ctx), ctx.decision)

    async def notify_complete(ctx: PipelineContext) -> CapabilityResult:
        return await notification.send_processing_complete(
            document_id(ctx), ctx.request["file_name"], ctx.decision.approved
        )

    async def notify_failed(ctx: PipelineContext) -> None:
        await notification.send_processing_failed(
            document_id(ctx), ctx.request["file_name"], ctx.failure_reason or "unknown"
        )

    async def write_status(ctx: PipelineContext, label: str) -> None:
        doc = document_id(ctx)
        if doc is not None:
            await storage.update_status(doc, label)

    stages = [
        Stage(
            name="STORAGE",
            order=1,
            title="Document storage",
            step=DOCUMENT_STORED,
            forward=persist,
            compensate=remove,
            compensate_action="DOCUMENT_DELETED",
            retry=retry["STORAGE"],
            label="VALIDATING",
        ),
        Stage(
            name="METADATA",
            order=2,
            title="Metadata extraction",
            step=METADATA_EXTRACTED,
            forward=extract_metadata,
            retry=retry["METADATA"],
            label="PRE_PROCESSING",
        ),
        Stage(
            name="OCR",
            order=3,
            title="OCR",
            step=OCR_COMPLETED,
            forward=ocr,
            retry=retry["OCR"],
            label="OCR_PROCESSING",
        ),
        Stage(
            name="CLASSIFICATION",
            order=4,
            title="Classification",
            step=DOCUMENT_CLASSIFIED,
            forward=classify,
            retry=retry["CLASSIFICATION"],
            label="CLASSIFYING",
        ),
        Stage(
            name="FINALIZE",
            order=6,
            title="Post-processing",
            step=DOCUMENT_FINALIZED,
            forward=finalize,
            retry=retry["FINALIZE"],
            label="POST_PROCESSING",
        ),
        Stage(
            name="NOTIFY",
            order=7,
            title="Completion notification",
            step=NOTIFICATION_SENT,
            forward=notify_complete,
            retry=retry["NOTIFY"],
            kind=StageKind.BEST_EFFORT,
        ),
    ]
    gate = GateConfig(
        name="REVIEW",
        order=5,
        request=request_review,
        timeout_seconds=timeout,
        default_decision=timed_out_decision,
        retry=retry["REVIEW"],
        label="PENDING_REVIEW",
    )
    return PipelineDefinition(
        name=PIPELINE_NAME,
        registry=StageRegistry(stages, gate=gate),
        request_schema=DOCUMENT_REQUEST_SCHEMA,
        failure_notice=notify_failed,
        on_transition=write_status,
    )
