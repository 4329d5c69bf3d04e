import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sagaflow.capabilities.base import CapabilityResult
from sagaflow.config import settings
from sagaflow.pipeline.context import Decision, PipelineContext

ForwardAction = Callable[[PipelineContext], Awaitable[CapabilityResult]]
CompensatingAction = Callable[[str], Awaitable[None]]
GateRequest = Callable[[PipelineContext], Awaitable[str]]
ContextHook = Callable[[PipelineContext], Awaitable[None]]
TransitionHook = Callable[[PipelineContext, str], Awaitable[None]]


class StageKind(str, enum.Enum):
    FORWARD = "forward"
    # Failure is logged and skipped; never triggers compensation.
    BEST_EFFORT = "best_effort"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = field(default_factory=lambda: settings.default_max_attempts)
    initial_interval: float = field(
        default_factory=lambda: settings.default_initial_interval_seconds
    )
    backoff_coefficient: float = field(
        default_factory=lambda: settings.default_backoff_coefficient
    )
    max_interval: float = field(default_factory=lambda: settings.default_max_interval_seconds)
    call_timeout: float = field(default_factory=lambda: settings.default_call_timeout_seconds)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")

    @classmethod
    def no_retry(cls, call_timeout: float | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=1,
            call_timeout=call_timeout or settings.default_call_timeout_seconds,
        )


@dataclass(frozen=True)
class Stage:
    """Immutable configuration binding a capability's forward/compensating pair."""

    name: str
    order: int
    title: str
    step: str
    forward: ForwardAction
    compensate: CompensatingAction | None = None
    compensate_action: str = ""
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    kind: StageKind = StageKind.FORWARD
    label: str | None = None

    @property
    def best_effort(self) -> bool:
        return self.kind is StageKind.BEST_EFFORT


@dataclass(frozen=True)
class GateConfig:
    name: str
    order: int
    request: GateRequest
    timeout_seconds: float
    default_decision: Callable[[], Decision]
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy.no_retry())
    label: str | None = None


class StageRegistry:
    """Ordered stages plus an optional gate splitting them into pre/post phases."""

    def __init__(self, stages: list[Stage], gate: GateConfig | None = None) -> None:
        names = [s.name for s in stages] + ([gate.name] if gate else [])
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate stage names: {names}")
        orders = [s.order for s in stages] + ([gate.order] if gate else [])
        if len(orders) != len(set(orders)):
            raise ValueError(f"Duplicate stage orders: {orders}")

        self._stages = sorted(stages, key=lambda s: s.order)
        self.gate = gate

    def __iter__(self):
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages) + (1 if self.gate else 0)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self._stages]

    def get(self, name: str) -> Stage | None:
        for stage in self._stages:
            if stage.name == name:
                return stage
        return None

    @property
    def before_gate(self) -> list[Stage]:
        if self.gate is None:
            return list(self._stages)
        return [s for s in self._stages if s.order < self.gate.order]

    @property
    def after_gate(self) -> list[Stage]:
        if self.gate is None:
            return []
        return [s for s in self._stages if s.order > self.gate.order]


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    registry: StageRegistry
    request_schema: dict[str, Any] = field(default_factory=dict)
    # Universal best-effort notification, attempted after every compensation run
    failure_notice: ContextHook | None = None
    # Invoked at each stage boundary with the stage's external status label
    on_transition: TransitionHook | None = None
