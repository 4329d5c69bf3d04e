"""Test-harness override that makes a named stage report a rejection.

Production pipeline definitions never include this wrapper; the instance manager
only applies it when fault injection is enabled for the instance.
"""

import dataclasses

import structlog

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.pipeline.context import PipelineContext
from sagaflow.pipeline.stages import ForwardAction, PipelineDefinition, Stage, StageRegistry

log = structlog.get_logger()


def _failing(stage: Stage) -> ForwardAction:
    async def forward(ctx: PipelineContext) -> CapabilityResult:
        if stage.name in ctx.injected_failures:
            log.info("injected_failure_triggered", instance_id=ctx.id, stage=stage.name)
            return CapabilityResult.rejected(f"Simulated {stage.name.lower()} failure")
        return await stage.forward(ctx)

    return forward


def with_fault_injection(definition: PipelineDefinition) -> PipelineDefinition:
    registry = definition.registry
    stages = [dataclasses.replace(s, forward=_failing(s)) for s in registry]
    return dataclasses.replace(definition, registry=StageRegistry(stages, gate=registry.gate))
