import asyncio
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CapabilityResult:
    """Outcome of a forward capability call: a token on success, a message on rejection."""

    success: bool
    token: str = ""
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, token: str, message: str = "", **data: Any) -> "CapabilityResult":
        return cls(success=True, token=token, message=message, data=data)

    @classmethod
    def rejected(cls, message: str, **data: Any) -> "CapabilityResult":
        return cls(success=False, message=message, data=data)


class RecordStore(Generic[T]):
    """Key-indexed record store owned by a single capability implementation."""

    def __init__(self) -> None:
        self._records: dict[str, T] = {}
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def get(self, key: str) -> T | None:
        return self._records.get(key)

    def put(self, key: str, record: T) -> None:
        self._records[key] = record

    def values(self) -> list[T]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records
