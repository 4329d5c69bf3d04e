from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from sagaflow.pipeline.context import (
    CompensationRecord,
    PipelineResult,
    PipelineStatus,
    Priority,
)


class StartResponse(BaseModel):
    instance_id: str
    pipeline: str
    status: PipelineStatus


class PriorityUpdate(BaseModel):
    # Left loose so the update validator, not FastAPI, reports bad values.
    priority: Any = None


class FailureInjection(BaseModel):
    stage: str = Field(min_length=1, max_length=100)


class PriorityResponse(BaseModel):
    instance_id: str
    previous: Priority
    priority: Priority


class StatusResponse(BaseModel):
    instance_id: str
    pipeline: str
    status: PipelineStatus
    current_stage: str | None = None
    completed_steps: list[str]
    failure_reason: str | None = None
    priority: Priority
    awaiting_decision: bool
    gate_token: str | None = None


class CompensationEntry(BaseModel):
    stage: str
    action: str
    token: str | None = None
    succeeded: bool
    error: str = ""

    @classmethod
    def from_record(cls, record: CompensationRecord) -> "CompensationEntry":
        return cls(
            stage=record.stage,
            action=record.action,
            token=record.token,
            succeeded=record.succeeded,
            error=record.error,
        )


class CompensationHistoryResponse(BaseModel):
    instance_id: str
    status: PipelineStatus
    completed_steps: list[str]
    planned: list[str]
    executed: list[CompensationEntry]


class DecisionResponse(BaseModel):
    approved: bool
    comments: str
    decided_at: datetime
    reviewer: str | None = None
    tags: list[str] = Field(default_factory=list)


class ResultResponse(BaseModel):
    instance_id: str
    pipeline: str
    status: PipelineStatus
    completed_steps: list[str]
    stage_tokens: dict[str, str]
    failure_reason: str | None = None
    compensations: list[CompensationEntry]
    decision: DecisionResponse | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None

    @classmethod
    def from_result(cls, result: PipelineResult) -> "ResultResponse":
        decision = None
        if result.decision is not None:
            decision = DecisionResponse.model_validate(result.decision.model_dump())
        return cls(
            instance_id=result.instance_id,
            pipeline=result.pipeline,
            status=result.status,
            completed_steps=result.completed_steps,
            stage_tokens=result.stage_tokens,
            failure_reason=result.failure_reason,
            compensations=[CompensationEntry.from_record(r) for r in result.compensations],
            decision=decision,
            started_at=result.started_at,
            finished_at=result.finished_at,
            duration_ms=result.duration_ms,
        )
