from typing import Any

from fastapi import APIRouter, Body, Depends

from sagaflow.routes.common import (
    compensation_history,
    instance_result,
    instance_status,
    lookup,
)
from sagaflow.schemas.control import (
    CompensationHistoryResponse,
    DecisionResponse,
    FailureInjection,
    PriorityResponse,
    PriorityUpdate,
    ResultResponse,
    StartResponse,
    StatusResponse,
)
from sagaflow.schemas.document import CreateDocumentRequest, PendingReviewResponse
from sagaflow.services.runtime import Runtime, get_runtime
from sagaflow.workflows.document import PIPELINE_NAME, document_id

router = APIRouter(prefix="/v1/documents", tags=["documents"])


@router.post("", status_code=202)
async def upload_document(
    body: CreateDocumentRequest, runtime: Runtime = Depends(get_runtime)
) -> StartResponse:
    request = body.model_dump(exclude={"fault_injection"})
    instance_id = await runtime.manager.start(
        PIPELINE_NAME, request, fault_injection=body.fault_injection
    )
    return StartResponse(
        instance_id=instance_id,
        pipeline=PIPELINE_NAME,
        status=runtime.manager.get(instance_id).ctx.status,
    )


@router.get("/reviews/pending")
async def pending_reviews(runtime: Runtime = Depends(get_runtime)) -> list[PendingReviewResponse]:
    return [PendingReviewResponse(**r) for r in await runtime.storage.pending_reviews()]


@router.get("/{instance_id}/status")
async def document_status(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    return instance_status(lookup(runtime, instance_id, PIPELINE_NAME))


@router.get("/{instance_id}/metrics")
async def document_metrics(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> dict[str, Any]:
    return lookup(runtime, instance_id, PIPELINE_NAME).control.get_metrics()


@router.get("/{instance_id}/result")
async def document_result(
    instance_id: str, wait: float | None = None, runtime: Runtime = Depends(get_runtime)
) -> ResultResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    return await instance_result(runtime, instance, wait)


@router.get("/{instance_id}/compensations")
async def document_compensations(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> CompensationHistoryResponse:
    return compensation_history(lookup(runtime, instance_id, PIPELINE_NAME))


@router.post("/{instance_id}/cancel", status_code=202)
async def cancel_document(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    instance.control.request_cancel()
    return instance_status(instance)


@router.post("/{instance_id}/inject-failure", status_code=202)
async def inject_document_failure(
    instance_id: str, body: FailureInjection, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    instance.control.inject_failure(body.stage)
    return instance_status(instance)


@router.put("/{instance_id}/priority")
async def update_document_priority(
    instance_id: str, body: PriorityUpdate, runtime: Runtime = Depends(get_runtime)
) -> PriorityResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    previous = instance.control.set_priority(body.priority)
    priority = instance.control.get_priority()
    doc = document_id(instance.ctx)
    if doc is not None:
        await runtime.storage.record_priority(doc, priority.value)
    return PriorityResponse(instance_id=instance_id, previous=previous, priority=priority)


@router.post("/{instance_id}/decision", status_code=202)
async def submit_decision(
    instance_id: str,
    payload: dict[str, Any] | None = Body(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> DecisionResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    decision = instance.control.submit_decision(payload)
    return DecisionResponse.model_validate(decision.model_dump())
