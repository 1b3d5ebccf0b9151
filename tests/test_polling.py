from __future__ import annotations

import pytest

from ebs_az_migrator.polling import PollTimeoutError, poll_until


def test_poll_until_with_eventual_success_returns_value_and_sleeps_between_attempts() -> None:
    answers = iter([None, "", "bound"])
    sleeps: list[float] = []

    result = poll_until(
        lambda: next(answers),
        description="claim to bind",
        attempts=5,
        interval_seconds=5,
        sleep=sleeps.append,
    )

    assert result == "bound"
    assert sleeps == [5, 5]


def test_poll_until_with_exhausted_attempts_raises_timeout_without_trailing_sleep() -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    with pytest.raises(PollTimeoutError, match="timed out waiting for pods to terminate after 3 attempts at 5s"):
        poll_until(
            lambda: calls.append(1),
            description="pods to terminate",
            attempts=3,
            interval_seconds=5,
            sleep=sleeps.append,
        )

    assert len(calls) == 3
    assert sleeps == [5, 5]


def test_poll_until_with_describe_last_appends_detail_to_timeout() -> None:
    with pytest.raises(PollTimeoutError, match=r"\(still running: web-0\)"):
        poll_until(
            lambda: False,
            description="pods to terminate",
            attempts=1,
            interval_seconds=1,
            sleep=lambda _: None,
            describe_last=lambda: "still running: web-0",
        )


def test_poll_until_timeout_is_a_builtin_timeout_error() -> None:
    with pytest.raises(TimeoutError):
        poll_until(lambda: None, description="x", attempts=1, interval_seconds=0, sleep=lambda _: None)


def test_poll_until_with_invalid_bounds_raises_value_error() -> None:
    with pytest.raises(ValueError, match="attempts"):
        poll_until(lambda: True, description="x", attempts=0, interval_seconds=1)
    with pytest.raises(ValueError, match="interval_seconds"):
        poll_until(lambda: True, description="x", attempts=1, interval_seconds=-1)
