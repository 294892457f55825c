"""Retry executor: runs an operation under a RetryPolicy.

The operation reports one of three results per attempt:

- `Success` stops immediately.
- `RetryableFailure` waits `policy.delay_before(n + 1)` and tries again until
  `max_attempts` is reached.
- `FatalFailure` stops immediately and is never retried.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .models import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    value: Any = None
    output: str = ""


@dataclass(frozen=True)
class RetryableFailure:
    reason: str
    output: str = ""


@dataclass(frozen=True)
class FatalFailure:
    reason: str
    output: str = ""


AttemptResult = Union[Success, RetryableFailure, FatalFailure]


@dataclass(frozen=True)
class RetryResult:
    ok: bool
    attempts: int
    value: Any = None
    reason: str = ""
    output: str = ""
    fatal: bool = False
    exhausted: bool = False
    cancelled: bool = False


class RetryExecutor:
    """
    Runs an operation until it succeeds, fails fatally, or runs out of attempts.

    `sleep` is injectable so tests can record the back-off schedule without
    waiting. When a `cancel_event` is given, waits are interrupted by it and
    no further attempt starts once it is set.
    """

    def __init__(
        self,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._sleep = sleep
        self.cancel_event = cancel_event

    def execute(
        self,
        operation: Callable[[int], AttemptResult],
        policy: RetryPolicy,
        on_retry: Optional[Callable[[int, str, float], None]] = None,
    ) -> RetryResult:
        last: Optional[AttemptResult] = None
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_before(attempt)
                reason = last.reason if isinstance(last, RetryableFailure) else ""
                if on_retry is not None:
                    on_retry(attempt, reason, delay)
                logger.info("   🔄 retry %d/%d in %.1fs: %s", attempt, policy.max_attempts, delay, reason)
                if self._wait(delay):
                    return self._cancelled(attempt - 1, last)
            elif self._is_cancelled():
                return RetryResult(ok=False, attempts=0, reason="cancelled", cancelled=True)

            last = operation(attempt)

            if isinstance(last, Success):
                return RetryResult(ok=True, attempts=attempt, value=last.value, output=last.output)
            if isinstance(last, FatalFailure):
                return RetryResult(
                    ok=False,
                    attempts=attempt,
                    reason=last.reason,
                    output=last.output,
                    fatal=True,
                )
            if not isinstance(last, RetryableFailure):
                raise TypeError(f"Operation returned unexpected result: {last!r}")

        assert isinstance(last, RetryableFailure)
        return RetryResult(
            ok=False,
            attempts=policy.max_attempts,
            reason=last.reason,
            output=last.output,
            exhausted=True,
        )

    def _is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _wait(self, delay: float) -> bool:
        """Wait `delay` seconds; returns True if cancelled meanwhile."""
        if self._sleep is not None:
            if delay > 0:
                self._sleep(delay)
            return self._is_cancelled()
        if self.cancel_event is not None:
            return self.cancel_event.wait(delay) if delay > 0 else self.cancel_event.is_set()
        if delay > 0:
            time.sleep(delay)
        return False

    @staticmethod
    def _cancelled(attempts: int, last: Optional[AttemptResult]) -> RetryResult:
        return RetryResult(
            ok=False,
            attempts=attempts,
            reason="cancelled",
            output=getattr(last, "output", ""),
            cancelled=True,
        )
