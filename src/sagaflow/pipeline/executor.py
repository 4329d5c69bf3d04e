import time

import structlog

from sagaflow.config import settings
from sagaflow.errors import (
    BusinessFailure,
    CancellationRequested,
    CompensationFailure,
    StageFailure,
)
from sagaflow.pipeline.context import (
    CompensationRecord,
    PipelineContext,
    PipelineResult,
    PipelineStatus,
    utcnow,
)
from sagaflow.pipeline.gate import ExternalGate
from sagaflow.pipeline.stages import PipelineDefinition, RetryPolicy, Stage
from sagaflow.pipeline.substrate import Substrate

log = structlog.get_logger()

FAILURE_NOTICE = "failure_notice"


def compensation_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.compensation_max_attempts)


class Orchestrator:
    """Drives one pipeline instance: forward pass, optional gate, compensation."""

    def __init__(
        self,
        definition: PipelineDefinition,
        ctx: PipelineContext,
        substrate: Substrate | None = None,
        compensation_retry: RetryPolicy | None = None,
    ) -> None:
        self.definition = definition
        self.ctx = ctx
        self.substrate = substrate or Substrate(ctx.id)
        self._compensation_retry = compensation_retry or compensation_policy()
        self.gate: ExternalGate | None = None

    async def execute(self) -> PipelineResult:
        ctx = self.ctx
        if ctx.status.is_terminal:
            return PipelineResult.from_context(ctx)
        if ctx.status is not PipelineStatus.PENDING:
            raise RuntimeError(f"Instance {ctx.id} is already executing")

        registry = self.definition.registry
        ctx.status = PipelineStatus.RUNNING
        ctx.started_at = utcnow()
        ctx.total_stages = len(registry)
        log.info("pipeline_started", instance_id=ctx.id, pipeline=ctx.pipeline)

        try:
            for stage in registry.before_gate:
                await self._run_stage(stage)

            if registry.gate is not None:
                await self._run_gate()
                for stage in registry.after_gate:
                    await self._run_stage(stage)
        except StageFailure as e:
            await self._fail(e)
            return PipelineResult.from_context(ctx)

        await self._transition(PipelineStatus.COMPLETED.value)
        ctx.finish(PipelineStatus.COMPLETED)
        log.info(
            "pipeline_completed",
            instance_id=ctx.id,
            pipeline=ctx.pipeline,
            steps=ctx.step_names,
        )
        return PipelineResult.from_context(ctx)

    async def _run_stage(self, stage: Stage) -> None:
        ctx = self.ctx
        self._observe_cancellation(stage.name)
        ctx.current_stage = stage.name
        await self._transition(stage.label)

        start = time.monotonic()
        try:
            result = await self.substrate.call(
                stage.name, lambda: stage.forward(ctx), stage.retry
            )
        except StageFailure as e:
            if stage.best_effort:
                log.warning(
                    "best_effort_stage_failed",
                    instance_id=ctx.id,
                    stage=stage.name,
                    reason=e.reason,
                )
                return
            raise type(e)(stage.name, f"{stage.title} failed: {e.reason}") from e
        finally:
            ctx.stage_durations_ms[stage.name] = (time.monotonic() - start) * 1000

        if not result.success:
            if stage.best_effort:
                log.warning(
                    "best_effort_stage_rejected",
                    instance_id=ctx.id,
                    stage=stage.name,
                    reason=result.message,
                )
                return
            raise BusinessFailure(stage.name, f"{stage.title} failed: {result.message}")

        ctx.record_step(stage.name, stage.step, result.token)
        ctx.outputs[stage.name] = {"token": result.token, **result.data}
        log.info(
            "stage_completed",
            instance_id=ctx.id,
            stage=stage.name,
            step=stage.step,
            duration_ms=round(ctx.stage_durations_ms[stage.name], 2),
        )

    async def _run_gate(self) -> None:
        ctx = self.ctx
        config = self.definition.registry.gate
        assert config is not None

        self._observe_cancellation(config.name)
        await self._transition(config.label)

        start = time.monotonic()
        self.gate = ExternalGate(config, ctx, self.substrate)
        try:
            await self.gate.request()
            ctx.decision = await self.gate.wait()
        finally:
            ctx.stage_durations_ms[config.name] = (time.monotonic() - start) * 1000
        ctx.status = PipelineStatus.RUNNING

    def _observe_cancellation(self, boundary: str) -> None:
        if self.ctx.cancel_requested:
            log.info("cancellation_observed", instance_id=self.ctx.id, boundary=boundary)
            raise CancellationRequested(boundary)

    async def _transition(self, label: str | None) -> None:
        hook = self.definition.on_transition
        if hook is None or label is None:
            return
        ctx = self.ctx
        try:
            await self.substrate.call(
                f"transition:{label}", lambda: hook(ctx, label), RetryPolicy.no_retry()
            )
        except StageFailure as e:
            log.warning("transition_hook_failed", instance_id=ctx.id, label=label, reason=e.reason)

    async def _fail(self, error: StageFailure) -> None:
        ctx = self.ctx
        cancelled = isinstance(error, CancellationRequested)
        status = PipelineStatus.CANCELLED if cancelled else PipelineStatus.FAILED
        log.error(
            "pipeline_failed",
            instance_id=ctx.id,
            stage=error.stage,
            reason=error.reason,
            error_type=type(error).__name__,
        )
        ctx.fail(error.reason, status)
        await self.compensate()
        await self._transition(status.value)
        ctx.finish(status)

    async def compensate(self) -> list[CompensationRecord]:
        """Undo completed steps in reverse order, then send the failure notice.

        Each compensating call is attempted independently; a failure is recorded
        and the remaining compensations still run.
        """
        ctx = self.ctx
        registry = self.definition.registry
        records: list[CompensationRecord] = []
        log.info("compensation_started", instance_id=ctx.id, steps=ctx.step_names)

        for step in reversed(list(ctx.completed_steps)):
            stage = registry.get(step.stage)
            if stage is None or stage.compensate is None:
                continue
            undo = stage.compensate
            action = stage.compensate_action or f"{stage.name}_COMPENSATED"
            try:
                await self.substrate.call(
                    f"{stage.name}:compensate",
                    lambda: undo(step.token),
                    self._compensation_retry,
                )
            except StageFailure as e:
                failure = CompensationFailure(stage.name, step.token, e.reason)
                log.error(
                    "compensation_failed",
                    instance_id=ctx.id,
                    stage=stage.name,
                    token=step.token,
                    reason=failure.reason,
                )
                records.append(
                    CompensationRecord(stage.name, action, step.token, False, str(failure))
                )
            else:
                log.info(
                    "compensation_succeeded",
                    instance_id=ctx.id,
                    stage=stage.name,
                    token=step.token,
                )
                records.append(CompensationRecord(stage.name, action, step.token, True))

        notice = self.definition.failure_notice
        if notice is not None:
            try:
                await self.substrate.call(
                    FAILURE_NOTICE, lambda: notice(ctx), self._compensation_retry
                )
            except StageFailure as e:
                log.error("failure_notice_failed", instance_id=ctx.id, reason=e.reason)
                records.append(CompensationRecord(FAILURE_NOTICE, "NOTIFY", None, False, e.reason))
            else:
                records.append(CompensationRecord(FAILURE_NOTICE, "NOTIFY", None, True))

        ctx.compensations.extend(records)
        log.info(
            "compensation_finished",
            instance_id=ctx.id,
            actions=[r.action for r in records if r.succeeded],
        )
        return records

    def planned_compensations(self) -> list[str]:
        """Compensating actions compensate() would run for the current completed steps."""
        registry = self.definition.registry
        planned = []
        for step in reversed(self.ctx.completed_steps):
            stage = registry.get(step.stage)
            if stage is not None and stage.compensate is not None:
                planned.append(stage.compensate_action or f"{stage.name}_COMPENSATED")
        if self.definition.failure_notice is not None:
            planned.append("NOTIFY")
        return planned
