import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from sagaflow.config import settings
from sagaflow.database import engine
from sagaflow.middleware.errors import register_exception_handlers
from sagaflow.routes.documents import router as documents_router
from sagaflow.routes.health import router as health_router
from sagaflow.routes.info import router as info_router
from sagaflow.routes.orders import router as orders_router
from sagaflow.services.runtime import get_runtime

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    logger_factory=structlog.PrintLoggerFactory(),
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime = get_runtime()
    log.info("starting", env=settings.app_env, pipelines=runtime.manager.pipelines)
    yield
    await runtime.manager.shutdown()
    await engine.dispose()
    log.info("shutdown")


app = FastAPI(title="Sagaflow", version="0.1.0", lifespan=lifespan)

register_exception_handlers(app)

app.include_router(health_router)
app.include_router(info_router)
app.include_router(orders_router)
app.include_router(documents_router)
