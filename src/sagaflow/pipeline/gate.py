import structlog

from sagaflow.errors import CancellationRequested
from sagaflow.pipeline.context import Decision, PipelineContext, PipelineStatus
from sagaflow.pipeline.stages import GateConfig
from sagaflow.pipeline.substrate import Substrate

log = structlog.get_logger()


class ExternalGate:
    """Suspension point waiting for an externally delivered Decision.

    ``request()`` notifies the decision-maker and returns the correlation token;
    ``wait()`` resolves with the submitted decision, or with the configured
    default decision once the window expires.
    """

    def __init__(self, config: GateConfig, ctx: PipelineContext, substrate: Substrate) -> None:
        self.config = config
        self._ctx = ctx
        self._substrate = substrate
        self._waiting = False

    async def request(self) -> str:
        ctx = self._ctx
        ctx.status = PipelineStatus.AWAITING_DECISION
        ctx.current_stage = self.config.name
        token = await self._substrate.call(
            self.config.name, lambda: self.config.request(ctx), self.config.retry
        )
        ctx.gate_token = token
        log.info("gate_requested", instance_id=ctx.id, gate=self.config.name)
        return token

    async def wait(self, timeout: float | None = None) -> Decision:
        if self._waiting:
            raise RuntimeError(f"Gate {self.config.name} already has an outstanding wait")
        ctx = self._ctx
        window = self.config.timeout_seconds if timeout is None else timeout

        self._waiting = True
        try:
            await self._substrate.wait_until(
                lambda: ctx.pending_decision is not None or ctx.cancel_requested,
                timeout=window,
            )
        finally:
            self._waiting = False

        if ctx.pending_decision is not None:
            decision = ctx.pending_decision
            log.info(
                "gate_decision_received",
                instance_id=ctx.id,
                gate=self.config.name,
                approved=decision.approved,
            )
            return decision

        if ctx.cancel_requested:
            log.info("gate_cancelled", instance_id=ctx.id, gate=self.config.name)
            raise CancellationRequested(self.config.name)

        decision = self.config.default_decision()
        log.info(
            "gate_timeout",
            instance_id=ctx.id,
            gate=self.config.name,
            window_seconds=window,
            approved=decision.approved,
        )
        return decision
