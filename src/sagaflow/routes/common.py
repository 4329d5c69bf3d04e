import asyncio

from fastapi import HTTPException

from sagaflow.errors import InstanceNotFoundError
from sagaflow.schemas.control import (
    CompensationEntry,
    CompensationHistoryResponse,
    ResultResponse,
    StatusResponse,
)
from sagaflow.services.instance_manager import ManagedInstance
from sagaflow.services.runtime import Runtime


def lookup(runtime: Runtime, instance_id: str, pipeline: str) -> ManagedInstance:
    instance = runtime.manager.get(instance_id)
    if instance.ctx.pipeline != pipeline:
        raise InstanceNotFoundError(instance_id)
    return instance


def instance_status(instance: ManagedInstance) -> StatusResponse:
    return StatusResponse(current_stage=instance.ctx.current_stage, **instance.control.get_info())


async def instance_result(
    runtime: Runtime, instance: ManagedInstance, wait: float | None
) -> ResultResponse:
    instance_id = instance.ctx.id
    if wait:
        try:
            result = await runtime.manager.await_result(instance_id, timeout=wait)
        except asyncio.TimeoutError:
            result = None
    else:
        result = runtime.manager.result(instance_id)
    if result is None:
        raise HTTPException(
            status_code=409,
            detail={"message": "Instance is still running", "status": instance.ctx.status.value},
        )
    return ResultResponse.from_result(result)


def compensation_history(instance: ManagedInstance) -> CompensationHistoryResponse:
    control = instance.control
    return CompensationHistoryResponse(
        instance_id=instance.ctx.id,
        status=control.get_status(),
        completed_steps=control.get_completed_steps(),
        planned=control.get_planned_compensations(),
        executed=[CompensationEntry.from_record(r) for r in control.get_compensations()],
    )
