class SagaflowError(Exception):
    """Base exception for all Sagaflow errors."""


class ValidationError(SagaflowError):
    """An Update payload or its timing was rejected before any mutation."""

    def __init__(self, update: str, reason: str, field: str | None = None) -> None:
        self.update = update
        self.reason = reason
        self.field = field
        super().__init__(f"{update} rejected: {reason}")

    def to_dict(self) -> dict[str, str | None]:
        return {"update": self.update, "reason": self.reason, "field": self.field}


class RequestSchemaError(SagaflowError):
    def __init__(self, pipeline: str, reason: str) -> None:
        self.pipeline = pipeline
        self.reason = reason
        super().__init__(f"Invalid {pipeline} request: {reason}")


class StageFailure(SagaflowError):
    """A stage did not complete. Always routed into compensation."""

    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(reason)


class BusinessFailure(StageFailure):
    """A capability explicitly rejected the request (declined, out of stock, ...)."""


class InfrastructureFailure(StageFailure):
    """A capability call exhausted its retry policy."""


class CancellationRequested(StageFailure):
    def __init__(self, stage: str, reason: str = "Cancellation requested") -> None:
        super().__init__(stage, reason)


class CompensationFailure(SagaflowError):
    def __init__(self, stage: str, token: str, reason: str) -> None:
        self.stage = stage
        self.token = token
        self.reason = reason
        super().__init__(f"Compensation of {stage} ({token}) failed: {reason}")


class InstanceNotFoundError(SagaflowError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Pipeline instance not found: {instance_id}")


class FaultInjectionDisabledError(SagaflowError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Fault injection is not enabled for instance {instance_id}")
