import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    AWAITING_DECISION = "AWAITING_DECISION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.CANCELLED}
)


class Priority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def level(self) -> int:
        return {"HIGH": 1, "MEDIUM": 2, "LOW": 3}[self.value]


class Decision(BaseModel):
    """An externally produced gate decision, delivered through an Update."""

    approved: bool
    comments: str = ""
    decided_at: datetime = Field(default_factory=utcnow)
    reviewer: str | None = None
    tags: list[str] = Field(default_factory=list)
    correlation_token: str | None = None

    @field_validator("comments")
    @classmethod
    def _strip_comments(cls, value: str) -> str:
        return value.strip()


@dataclass(frozen=True)
class CompletedStep:
    stage: str
    step: str
    token: str


@dataclass(frozen=True)
class CompensationRecord:
    stage: str
    action: str
    token: str | None
    succeeded: bool
    error: str = ""


@dataclass
class PipelineContext:
    """Durable state of one pipeline instance.

    Owned by the instance's orchestrator task. Control-plane handlers run on the
    same event loop, so field access is serialized without explicit locking.
    """

    pipeline: str
    request: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: PipelineStatus = PipelineStatus.PENDING
    completed_steps: list[CompletedStep] = field(default_factory=list)
    failure_reason: str | None = None
    priority: Priority = Priority.MEDIUM
    pending_decision: Decision | None = None
    cancel_requested: bool = False

    current_stage: str | None = None
    decision: Decision | None = None
    gate_token: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    compensations: list[CompensationRecord] = field(default_factory=list)
    stage_durations_ms: dict[str, float] = field(default_factory=dict)
    progress_message: str | None = None
    total_stages: int = 0

    fault_injection_enabled: bool = False
    injected_failures: set[str] = field(default_factory=set)

    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def record_step(self, stage: str, step: str, token: str) -> None:
        if self.status.is_terminal:
            raise RuntimeError(f"Instance {self.id} is terminal; cannot record {step}")
        self.completed_steps.append(CompletedStep(stage=stage, step=step, token=token))

    def fail(self, reason: str, status: PipelineStatus = PipelineStatus.FAILED) -> None:
        # failure_reason is written once; later failures (e.g. during compensation)
        # never overwrite the original cause.
        if self.failure_reason is None:
            self.failure_reason = reason
        self.status = status

    def finish(self, status: PipelineStatus) -> None:
        self.status = status
        self.current_stage = None
        self.finished_at = utcnow()

    def report_progress(self, message: str) -> None:
        self.progress_message = message

    @property
    def step_names(self) -> list[str]:
        return [s.step for s in self.completed_steps]

    @property
    def stage_tokens(self) -> dict[str, str]:
        return {s.step: s.token for s in self.completed_steps}


@dataclass(frozen=True)
class PipelineResult:
    instance_id: str
    pipeline: str
    status: PipelineStatus
    completed_steps: list[str]
    stage_tokens: dict[str, str]
    failure_reason: str | None
    compensations: list[CompensationRecord]
    decision: Decision | None
    outputs: dict[str, Any]
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @classmethod
    def from_context(cls, ctx: PipelineContext) -> "PipelineResult":
        return cls(
            instance_id=ctx.id,
            pipeline=ctx.pipeline,
            status=ctx.status,
            completed_steps=ctx.step_names,
            stage_tokens=ctx.stage_tokens,
            failure_reason=ctx.failure_reason,
            compensations=list(ctx.compensations),
            decision=ctx.decision,
            outputs=dict(ctx.outputs),
            started_at=ctx.started_at,
            finished_at=ctx.finished_at,
        )
