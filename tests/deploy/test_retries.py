"""Tenacity retry controller: transient-only retries, hints, caps, cancellation."""

from __future__ import annotations

import pytest

from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.errors import (
    LedgerConflictError,
    RejectedStorageError,
    TransientLedgerError,
    TransientStorageError,
)
from AssetLedger.Deploy.retries import RetryPolicy, build_retrying

from fakes import SleepRecorder


class Flaky:
    """Raise the queued errors, then return ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def _policy(sleep, **overrides):
    values = dict(max_attempts=4, base_delay_s=1.0, max_delay_s=8.0, jitter_s=0.0, sleep=sleep)
    values.update(overrides)
    return RetryPolicy(**values)


def test_transient_errors_are_retried_with_exponential_backoff():
    sleep = SleepRecorder()
    func = Flaky([TransientStorageError("503"), TransientLedgerError("busy"), TransientStorageError("503")])

    assert build_retrying(_policy(sleep))(func) == "ok"

    assert func.calls == 4
    assert sleep.calls == [1.0, 2.0, 4.0]


def test_backoff_is_capped():
    sleep = SleepRecorder()
    func = Flaky([TransientStorageError("x")] * 5)
    policy = _policy(sleep, max_attempts=6, max_delay_s=3.0)

    build_retrying(policy)(func)

    assert max(sleep.calls) == 3.0


def test_gives_up_after_max_attempts_and_reraises():
    sleep = SleepRecorder()
    func = Flaky([TransientStorageError(str(n)) for n in range(10)])

    with pytest.raises(TransientStorageError, match="3"):
        build_retrying(_policy(sleep))(func)

    assert func.calls == 4


@pytest.mark.parametrize(
    "error", [RejectedStorageError("400", status=400), LedgerConflictError("slot filled"), KeyError("x")]
)
def test_non_transient_errors_are_not_retried(error):
    sleep = SleepRecorder()
    func = Flaky([error])

    with pytest.raises(type(error)):
        build_retrying(_policy(sleep))(func)

    assert func.calls == 1
    assert sleep.calls == []


def test_retry_after_hint_wins_and_is_capped():
    sleep = SleepRecorder()
    func = Flaky(
        [
            TransientStorageError("429", status=429, retry_after=2.5),
            TransientStorageError("429", status=429, retry_after=120),
        ]
    )

    build_retrying(_policy(sleep, max_delay_s=10.0))(func)

    assert sleep.calls == [2.5, 10.0]


def test_jitter_stays_within_bound():
    sleep = SleepRecorder()
    func = Flaky([TransientStorageError("x")] * 3)

    build_retrying(_policy(sleep, base_delay_s=0.0, jitter_s=0.5))(func)

    assert all(0.0 <= delay <= 0.5 for delay in sleep.calls)


def test_cancellation_stops_retrying():
    sleep = SleepRecorder()
    token = CancellationToken()

    def fail_and_cancel():
        token.cancel("SIGINT")
        raise TransientStorageError("timeout")

    with pytest.raises(TransientStorageError):
        build_retrying(_policy(sleep), cancel=token)(fail_and_cancel)

    assert sleep.calls == []


@pytest.mark.parametrize(
    "field, value",
    [("max_attempts", 0), ("base_delay_s", -1), ("max_delay_s", -1), ("jitter_s", -0.1)],
)
def test_policy_rejects_invalid_bounds(field, value):
    with pytest.raises(ValueError):
        RetryPolicy(**{field: value})
