from fastapi import APIRouter, Depends

from sagaflow.routes.common import (
    compensation_history,
    instance_result,
    instance_status,
    lookup,
)
from sagaflow.schemas.control import (
    CompensationHistoryResponse,
    FailureInjection,
    PriorityResponse,
    PriorityUpdate,
    ResultResponse,
    StartResponse,
    StatusResponse,
)
from sagaflow.schemas.order import CreateOrderRequest
from sagaflow.services.runtime import Runtime, get_runtime
from sagaflow.workflows.order import PIPELINE_NAME, SAMPLE_ORDER

router = APIRouter(prefix="/v1/orders", tags=["orders"])


@router.post("", status_code=202)
async def create_order(
    body: CreateOrderRequest, runtime: Runtime = Depends(get_runtime)
) -> StartResponse:
    instance_id = await runtime.manager.start(
        PIPELINE_NAME, body.to_request(), fault_injection=body.fault_injection
    )
    return StartResponse(
        instance_id=instance_id,
        pipeline=PIPELINE_NAME,
        status=runtime.manager.get(instance_id).ctx.status,
    )


@router.post("/sample", status_code=202)
async def create_sample_order(runtime: Runtime = Depends(get_runtime)) -> StartResponse:
    instance_id = await runtime.manager.start(PIPELINE_NAME, dict(SAMPLE_ORDER))
    return StartResponse(
        instance_id=instance_id,
        pipeline=PIPELINE_NAME,
        status=runtime.manager.get(instance_id).ctx.status,
    )


@router.get("/{instance_id}/status")
async def order_status(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    return instance_status(lookup(runtime, instance_id, PIPELINE_NAME))


@router.get("/{instance_id}/result")
async def order_result(
    instance_id: str, wait: float | None = None, runtime: Runtime = Depends(get_runtime)
) -> ResultResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    return await instance_result(runtime, instance, wait)


@router.get("/{instance_id}/compensations")
async def order_compensations(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> CompensationHistoryResponse:
    return compensation_history(lookup(runtime, instance_id, PIPELINE_NAME))


@router.post("/{instance_id}/cancel", status_code=202)
async def cancel_order(
    instance_id: str, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    instance.control.request_cancel()
    return instance_status(instance)


@router.post("/{instance_id}/inject-failure", status_code=202)
async def inject_order_failure(
    instance_id: str, body: FailureInjection, runtime: Runtime = Depends(get_runtime)
) -> StatusResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    instance.control.inject_failure(body.stage)
    return instance_status(instance)


@router.put("/{instance_id}/priority")
async def update_order_priority(
    instance_id: str, body: PriorityUpdate, runtime: Runtime = Depends(get_runtime)
) -> PriorityResponse:
    instance = lookup(runtime, instance_id, PIPELINE_NAME)
    previous = instance.control.set_priority(body.priority)
    return PriorityResponse(
        instance_id=instance_id, previous=previous, priority=instance.control.get_priority()
    )
