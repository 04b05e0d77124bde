# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.ratelimit",
#   "purpose": "Shared upload rate limiting with pyrate-limiter.",
#   "sections": [
#     {"id": "parse-rates", "name": "parse_rates", "anchor": "function-parse-rates", "kind": "function"},
#     {"id": "uploadratelimiter", "name": "UploadRateLimiter", "anchor": "class-uploadratelimiter", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Upload rate limiting.

All upload workers share one :class:`UploadRateLimiter`. Every call to the
storage backend (media or metadata) takes one token. Acquisition is a bounded
wait: the limiter polls until capacity frees up, the run is cancelled, or
``max_wait_s`` elapses, in which case :class:`RateLimitExceeded` (a transient
storage error) lets the retry policy decide what happens next.

Rates are written as ``"<limit>/<UNIT>"`` strings, e.g. ``"10/SECOND"`` or
``"5000/HOUR"``; ``"1/3SECOND"`` style fractions are not supported.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Sequence

from pyrate_limiter import Duration, Limiter, Rate

from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.errors import RateLimitExceeded

__all__ = ["UploadRateLimiter", "parse_rates"]

LOGGER = logging.getLogger(__name__)

_UNITS = {
    "SECOND": Duration.SECOND,
    "MINUTE": Duration.MINUTE,
    "HOUR": Duration.HOUR,
    "DAY": Duration.DAY,
}

_POLL_INTERVAL_S = 0.025
_BUCKET_KEY = "storage-upload"


def parse_rates(rates: Sequence[str]) -> List[Rate]:
    """Parse rate strings like ``'10/SECOND'`` into pyrate-limiter rates.

    Raises:
        ValueError: on a malformed string or unknown unit.
    """
    parsed: List[Rate] = []
    for rate_str in rates:
        if "/" not in rate_str:
            raise ValueError(f"Invalid rate format: {rate_str!r} (expected '<n>/<UNIT>')")
        limit_part, unit_part = rate_str.split("/", 1)
        try:
            limit = int(limit_part.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid rate limit in {rate_str!r}") from exc
        unit = unit_part.strip().upper()
        if unit not in _UNITS:
            raise ValueError(f"Unknown rate unit {unit!r} in {rate_str!r}")
        if limit <= 0:
            raise ValueError(f"Rate limit must be positive in {rate_str!r}")
        parsed.append(Rate(limit, _UNITS[unit]))
    # pyrate-limiter expects rates ordered by interval
    parsed.sort(key=lambda rate: rate.interval)
    return parsed


class UploadRateLimiter:
    """Thread-safe limiter shared by every upload worker."""

    def __init__(
        self,
        rates: Sequence[str],
        *,
        max_wait_s: float = 30.0,
        cancel: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rates = list(rates)
        self.max_wait_s = max_wait_s
        self._cancel = cancel
        self._now = clock
        self._limiter: Optional[Limiter] = None
        self._lock = threading.Lock()
        self.acquired = 0

        parsed = parse_rates(self.rates)
        if parsed:
            self._limiter = Limiter(parsed, raise_when_fail=False, max_delay=None)
            LOGGER.debug("Upload rate limiter active: %s", ", ".join(self.rates))

    @property
    def enabled(self) -> bool:
        return self._limiter is not None

    def acquire(self) -> float:
        """Take one upload token, waiting up to ``max_wait_s``.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitExceeded: if no capacity was granted in time, or the run
                was cancelled while waiting.
        """
        if self._limiter is None:
            self._count()
            return 0.0

        start = self._now()
        while True:
            if self._limiter.try_acquire(_BUCKET_KEY, 1):
                self._count()
                return self._now() - start

            elapsed = self._now() - start
            if self._cancel is not None and self._cancel.is_cancelled():
                raise RateLimitExceeded("Upload rate limiter wait cancelled")
            if elapsed >= self.max_wait_s:
                raise RateLimitExceeded(
                    f"Upload rate limit {self.rates} not granted within {self.max_wait_s:.1f}s"
                )
            time.sleep(min(_POLL_INTERVAL_S, max(self.max_wait_s - elapsed, 0.001)))

    def _count(self) -> None:
        with self._lock:
            self.acquired += 1
