import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import jsonschema
import structlog

from sagaflow.config import settings
from sagaflow.errors import InstanceNotFoundError, RequestSchemaError
from sagaflow.pipeline.context import PipelineContext, PipelineResult
from sagaflow.pipeline.control import ControlPlane
from sagaflow.pipeline.executor import Orchestrator
from sagaflow.pipeline.fault_injection import with_fault_injection
from sagaflow.pipeline.stages import PipelineDefinition, RetryPolicy

log = structlog.get_logger()


@dataclass
class ManagedInstance:
    orchestrator: Orchestrator
    control: ControlPlane
    task: asyncio.Task[PipelineResult]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retrieved_at: datetime | None = None

    @property
    def ctx(self) -> PipelineContext:
        return self.orchestrator.ctx


class InstanceManager:
    """Starts pipeline instances as background tasks and looks them up by id."""

    def __init__(
        self,
        compensation_retry: RetryPolicy | None = None,
        retention_seconds: float | None = None,
    ) -> None:
        self._definitions: dict[str, PipelineDefinition] = {}
        self._instances: dict[str, ManagedInstance] = {}
        self._lock = asyncio.Lock()
        self._compensation_retry = compensation_retry
        self._retention = timedelta(
            seconds=settings.instance_retention_seconds
            if retention_seconds is None
            else retention_seconds
        )

    def register(self, definition: PipelineDefinition) -> None:
        self._definitions[definition.name] = definition
        log.info(
            "pipeline_registered",
            pipeline=definition.name,
            stages=definition.registry.stage_names,
        )

    def definition(self, pipeline: str) -> PipelineDefinition:
        try:
            return self._definitions[pipeline]
        except KeyError:
            raise RequestSchemaError(pipeline, "Unknown pipeline") from None

    @property
    def pipelines(self) -> list[str]:
        return list(self._definitions)

    async def start(
        self,
        pipeline: str,
        request: dict[str, Any],
        fault_injection: bool | None = None,
    ) -> str:
        """Validate ``request`` and launch a new instance. Returns its id."""
        definition = self.definition(pipeline)
        if definition.request_schema:
            try:
                jsonschema.validate(instance=request, schema=definition.request_schema)
            except jsonschema.ValidationError as e:
                raise RequestSchemaError(pipeline, e.message) from None

        enabled = settings.enable_fault_injection if fault_injection is None else fault_injection
        if enabled:
            definition = with_fault_injection(definition)

        ctx = PipelineContext(
            pipeline=pipeline, request=request, fault_injection_enabled=enabled
        )
        orchestrator = Orchestrator(
            definition, ctx, compensation_retry=self._compensation_retry
        )
        async with self._lock:
            self._prune()
            task = asyncio.create_task(orchestrator.execute(), name=f"{pipeline}:{ctx.id}")
            task.add_done_callback(self._on_done)
            self._instances[ctx.id] = ManagedInstance(
                orchestrator=orchestrator,
                control=ControlPlane(orchestrator),
                task=task,
            )
        log.info("instance_started", instance_id=ctx.id, pipeline=pipeline)
        return ctx.id

    def get(self, instance_id: str) -> ManagedInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def control(self, instance_id: str) -> ControlPlane:
        return self.get(instance_id).control

    def instances(self, pipeline: str | None = None) -> list[ManagedInstance]:
        return [
            i for i in self._instances.values() if pipeline is None or i.ctx.pipeline == pipeline
        ]

    async def await_result(
        self, instance_id: str, timeout: float | None = None
    ) -> PipelineResult:
        instance = self.get(instance_id)
        result = await asyncio.wait_for(asyncio.shield(instance.task), timeout=timeout)
        self._mark_retrieved(instance)
        return result

    def result(self, instance_id: str) -> PipelineResult | None:
        """The final result, or None while the instance is still running."""
        instance = self.get(instance_id)
        if not instance.task.done():
            return None
        result = instance.task.result()
        self._mark_retrieved(instance)
        return result

    async def shutdown(self) -> None:
        async with self._lock:
            running = [i.task for i in self._instances.values() if not i.task.done()]
            for task in running:
                task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        log.info("instance_manager_shutdown", cancelled=len(running))

    def _on_done(self, task: asyncio.Task[PipelineResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("instance_crashed", task=task.get_name(), error=repr(exc))

    def _mark_retrieved(self, instance: ManagedInstance) -> None:
        if instance.retrieved_at is None:
            instance.retrieved_at = datetime.now(timezone.utc)

    def _prune(self) -> None:
        """Drop terminal instances whose result was read more than the retention window ago."""
        cutoff = datetime.now(timezone.utc) - self._retention
        expired = [
            instance_id
            for instance_id, i in self._instances.items()
            if i.task.done() and i.retrieved_at is not None and i.retrieved_at <= cutoff
        ]
        for instance_id in expired:
            del self._instances[instance_id]
        if expired:
            log.info("instances_evicted", count=len(expired))
