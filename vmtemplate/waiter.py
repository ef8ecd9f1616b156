"""Bounded-timeout polling."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional, Tuple, Type, Union

from vmtemplate.constants import DEFAULT_TIMEOUT_SECONDS, POLL_INTERVAL_SECONDS
from vmtemplate.exceptions import PollFailedError, TransientError
from vmtemplate.models import BuildSettings, PollResult, WaitOutcome
from vmtemplate.utils import log

Predicate = Callable[[], Union[bool, PollResult]]

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (TransientError, ConnectionError, TimeoutError)


class PollingWaiter:
    """Retry a predicate at a fixed interval until it is ready or the deadline passes.

    The predicate returns either a bool or a :class:`PollResult`. Transient
    errors count as "not ready yet". ``PollResult.failed`` raises
    :class:`PollFailedError`. Any other exception propagates in strict mode and
    is treated as "not ready" otherwise.
    """

    def __init__(
        self,
        settings: Optional[BuildSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or BuildSettings()
        self.clock = clock
        self.sleep = sleep

    def wait_until(
        self,
        predicate: Predicate,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        description: str = "condition",
    ) -> WaitOutcome:
        start = self.clock()
        deadline = start + timeout
        polls = 0
        last_reason = ""
        while True:
            now = self.clock()
            if now >= deadline:
                log(
                    "DEBUG",
                    f"Gave up waiting for {description} after {polls} polls ({int(timeout)}s)",
                    verbose=self.settings.verbose,
                )
                return WaitOutcome(success=False, polls=polls, elapsed=now - start, last_reason=last_reason)
            polls += 1
            result = self._evaluate(predicate, description)
            if result.is_failed:
                raise PollFailedError(f"{description}: {result.reason}")
            if result.is_ready:
                return WaitOutcome(success=True, polls=polls, elapsed=self.clock() - start, value=result.value)
            last_reason = result.reason
            self.sleep(poll_interval)

    def _evaluate(self, predicate: Predicate, description: str) -> PollResult:
        try:
            outcome: Any = predicate()
        except TRANSIENT_ERRORS as exc:
            log("DEBUG", f"{description} not ready: {exc}", verbose=self.settings.verbose)
            return PollResult.not_ready(str(exc))
        except Exception as exc:
            if self.settings.strict:
                raise
            log("WARN", f"{description} poll raised {exc.__class__.__name__}: {exc}")
            return PollResult.not_ready(str(exc))
        if isinstance(outcome, PollResult):
            return outcome
        return PollResult.ready(outcome) if outcome else PollResult.not_ready()
