from __future__ import annotations

from typing import Callable, TypeVar
import time

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    """Raised when a bounded wait exhausts its attempts."""

    def __init__(self, *, description: str, attempts: int, interval_seconds: float, detail: str | None = None) -> None:
        message = f"timed out waiting for {description} after {attempts} attempts at {interval_seconds:g}s intervals"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.description = description
        self.attempts = attempts


def poll_until(
    check: Callable[[], T | None],
    *,
    description: str,
    attempts: int,
    interval_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    describe_last: Callable[[], str] | None = None,
) -> T:
    """Call ``check`` until it returns a truthy value.

    ``check`` runs at most ``attempts`` times with ``sleep(interval_seconds)``
    between calls; there is no sleep after the final attempt. The truthy value is
    returned, otherwise ``PollTimeoutError`` is raised.
    """
    if attempts <= 0:
        raise ValueError("attempts must be positive")
    if interval_seconds < 0:
        raise ValueError("interval_seconds must not be negative")

    for attempt in range(1, attempts + 1):
        result = check()
        if result:
            return result
        if attempt < attempts:
            sleep(interval_seconds)

    detail = describe_last() if describe_last is not None else None
    raise PollTimeoutError(
        description=description,
        attempts=attempts,
        interval_seconds=interval_seconds,
        detail=detail,
    )
