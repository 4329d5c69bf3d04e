from fastapi import APIRouter, Depends

from sagaflow.services.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    return {"status": "ok", "pipelines": runtime.manager.pipelines}
