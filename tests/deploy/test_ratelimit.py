"""Upload rate limiter parsing and bounded acquisition."""

from __future__ import annotations

import pytest
from pyrate_limiter import Duration

from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.errors import RateLimitExceeded, TransientStorageError
from AssetLedger.Deploy.ratelimit import UploadRateLimiter, parse_rates


def test_parse_rates_sorted_by_interval():
    rates = parse_rates(["100/HOUR", "5/second"])

    assert [(rate.limit, rate.interval) for rate in rates] == [
        (5, Duration.SECOND),
        (100, Duration.HOUR),
    ]


@pytest.mark.parametrize("value", ["10", "x/SECOND", "10/FORTNIGHT", "0/SECOND", "-1/MINUTE"])
def test_parse_rates_rejects_malformed(value):
    with pytest.raises(ValueError):
        parse_rates([value])


def test_disabled_limiter_never_waits():
    limiter = UploadRateLimiter([])

    for _ in range(50):
        assert limiter.acquire() == 0.0
    assert not limiter.enabled
    assert limiter.acquired == 50


def test_exhausted_limiter_raises_transient_error():
    limiter = UploadRateLimiter(["2/MINUTE"], max_wait_s=0.0)

    limiter.acquire()
    limiter.acquire()
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.acquire()

    assert isinstance(excinfo.value, TransientStorageError)
    assert limiter.acquired == 2


def test_cancellation_ends_the_wait():
    token = CancellationToken()
    token.cancel()
    limiter = UploadRateLimiter(["1/HOUR"], max_wait_s=60.0, cancel=token)
    limiter.acquire()

    with pytest.raises(RateLimitExceeded, match="cancelled"):
        limiter.acquire()
