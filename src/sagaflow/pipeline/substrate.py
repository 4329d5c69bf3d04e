"""In-process stand-in for the durable-execution primitives the orchestrator consumes.

Three primitives are used: a reliable call with a retry policy, a timer, and a
condition wait that control-plane handlers can wake. State here lives only in
memory; crash-safe persistence and replay belong to a real substrate.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sagaflow.errors import BusinessFailure, CancellationRequested, InfrastructureFailure
from sagaflow.pipeline.stages import RetryPolicy

log = structlog.get_logger()

T = TypeVar("T")

# Never retried: a rejection or cancellation would only repeat.
NON_RETRYABLE = (BusinessFailure, CancellationRequested, asyncio.CancelledError)


class Substrate:
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        self._changed = asyncio.Event()

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> T:
        """Invoke ``fn`` under ``policy``.

        Each attempt is bounded by ``policy.call_timeout``. When attempts run out
        the last error is wrapped in InfrastructureFailure.
        """

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log.warning(
                "capability_call_retry",
                instance_id=self.instance_id,
                call=name,
                attempt=state.attempt_number,
                error=repr(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_interval,
                exp_base=policy.backoff_coefficient,
                max=policy.max_interval,
            ),
            retry=retry_if_not_exception_type(NON_RETRYABLE),
            before_sleep=_log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.wait_for(fn(), timeout=policy.call_timeout)
        except RetryError as e:
            last = e.last_attempt.exception()
            if isinstance(last, asyncio.TimeoutError):
                reason = f"timed out after {policy.call_timeout}s"
            else:
                reason = f"{type(last).__name__}: {last}"
            raise InfrastructureFailure(
                name, f"{name} failed after {policy.max_attempts} attempts ({reason})"
            ) from last
        raise AssertionError("unreachable")  # pragma: no cover

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def notify(self) -> None:
        """Wake any pending condition wait so it re-evaluates its predicate."""
        self._changed.set()

    async def wait_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Suspend until ``predicate()`` holds or ``timeout`` seconds pass.

        Returns the predicate's final value, so False means the wait timed out.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return predicate()
        return True
