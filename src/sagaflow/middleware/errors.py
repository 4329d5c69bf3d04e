from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sagaflow.errors import (
    FaultInjectionDisabledError,
    InstanceNotFoundError,
    RequestSchemaError,
    ValidationError,
)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def update_rejected(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.reason, **exc.to_dict()},
        )

    @app.exception_handler(RequestSchemaError)
    async def request_schema(request: Request, exc: RequestSchemaError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.reason, "pipeline": exc.pipeline},
        )

    @app.exception_handler(InstanceNotFoundError)
    async def instance_not_found(request: Request, exc: InstanceNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": str(exc)},
        )

    @app.exception_handler(FaultInjectionDisabledError)
    async def fault_injection_disabled(
        request: Request, exc: FaultInjectionDisabledError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={"detail": str(exc)},
        )
