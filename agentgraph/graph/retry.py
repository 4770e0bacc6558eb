"""
Retry / Timeout Policy - Bounded attempts with exponential backoff.

Every attempt runs under a hard timeout. A failed attempt is retried while
the error is retryable and the attempt budget lasts; the delay before
attempt ``n + 1`` is ``base_delay * backoff_factor ** (n - 1)`` capped at
``max_delay``. Validation and authorization errors short-circuit the budget.

Hooks let the caller observe each attempt, which is how the walker records
one trace entry per attempt.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from agentgraph.errors import StepError, StepTimeoutError
from agentgraph.graph.definition import RetryOverride
from agentgraph.graph.invoker import StepResult

logger = logging.getLogger(__name__)

AttemptFn = Callable[[int], Awaitable[StepResult]]
AttemptStartHook = Callable[[int], Awaitable[None]]
AttemptEndHook = Callable[[int, StepResult, bool], Awaitable[None]]


@dataclass
class RetryOutcome:
    """Final result of a retried invocation."""

    result: StepResult
    attempts: int

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass
class RetryPolicy:
    """Retry budget, backoff schedule and per-attempt timeout."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    timeout: float | None = 30.0  # Seconds per attempt, None disables

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def should_retry(self, error: StepError | None, attempt: int) -> bool:
        if error is None or not error.retryable:
            return False
        return attempt < self.max_attempts

    def with_overrides(
        self,
        override: RetryOverride | None = None,
        timeout: float | None = None,
    ) -> "RetryPolicy":
        """Return a copy with per-node settings applied."""
        changes: dict = {}
        if override is not None:
            for name in ("max_attempts", "base_delay", "backoff_factor", "max_delay"):
                value = getattr(override, name)
                if value is not None:
                    changes[name] = value
        if timeout is not None:
            changes["timeout"] = timeout
        return replace(self, **changes) if changes else self

    async def run(
        self,
        fn: AttemptFn,
        *,
        label: str = "step",
        on_attempt_start: AttemptStartHook | None = None,
        on_attempt_end: AttemptEndHook | None = None,
    ) -> RetryOutcome:
        """
        Call ``fn(attempt)`` until it succeeds or the budget is spent.

        Args:
            fn: Coroutine factory taking the 1-based attempt number
            label: Name used in timeout errors and logs
            on_attempt_start: Awaited before each attempt
            on_attempt_end: Awaited after each attempt with (attempt, result, will_retry)

        Returns:
            RetryOutcome with the last result and the number of attempts made
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt_start is not None:
                await on_attempt_start(attempt)

            result = await self._attempt(fn, attempt, label)

            will_retry = not result.success and self.should_retry(result.error, attempt)
            if on_attempt_end is not None:
                await on_attempt_end(attempt, result, will_retry)

            if result.success:
                return RetryOutcome(result=result, attempts=attempt)

            if not will_retry:
                if result.error is not None and not result.error.retryable:
                    logger.error(f"   ✗ Non-retryable {result.error.code} in {label}")
                else:
                    logger.error(f"   ✗ Max retries ({self.max_attempts}) exceeded for {label}")
                return RetryOutcome(result=result, attempts=attempt)

            delay = self.delay_for(attempt)
            logger.info(f"   Using backoff: Sleeping {delay}s before retry...")
            await asyncio.sleep(delay)
            logger.info(f"   ↻ Retrying ({attempt}/{self.max_attempts})...")

    async def _attempt(self, fn: AttemptFn, attempt: int, label: str) -> StepResult:
        started = time.monotonic()
        try:
            if self.timeout is not None:
                result = await asyncio.wait_for(fn(attempt), timeout=self.timeout)
            else:
                result = await fn(attempt)
        except TimeoutError:
            result = StepResult(error=StepTimeoutError(label, self.timeout or 0))
        except StepError as e:
            result = StepResult(error=e)
        except Exception as e:
            result = StepResult(error=StepError.from_exception(e))

        result.latency_ms = int((time.monotonic() - started) * 1000)
        return result
