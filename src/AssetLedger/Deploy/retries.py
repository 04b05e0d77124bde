# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.retries",
#   "purpose": "Injectable retry policy object and Tenacity controller builder",
#   "sections": [
#     {"id": "retrypolicy", "name": "RetryPolicy", "anchor": "class-retrypolicy", "kind": "class"},
#     {"id": "waitretryafter", "name": "_WaitRetryAfter", "anchor": "class-waitretryafter", "kind": "class"},
#     {"id": "stopwhencancelled", "name": "_StopWhenCancelled", "anchor": "class-stopwhencancelled", "kind": "class"},
#     {"id": "build-retrying", "name": "build_retrying", "anchor": "function-build-retrying", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Tenacity retry strategies for uploads and ledger calls.

Provides:
- :class:`RetryPolicy`, the policy object injected into the upload workers,
  the ledger writer and the reconciler (max attempts, base delay, cap, jitter,
  and an injectable ``sleep`` for deterministic tests)
- A wait strategy that honours ``retry_after`` hints carried by transient
  errors, falling back to capped exponential backoff with jitter
- A stop strategy that ends retrying as soon as the run is cancelled
- :func:`build_retrying`, which assembles the Tenacity controller

Usage::

    retrying = build_retrying(policy, retry_on=is_transient, cancel=token)
    uri = retrying(storage.upload, payload, "image/png")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import tenacity
from tenacity import RetryCallState, before_sleep_log, retry_if_exception

from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.errors import is_transient

__all__ = ["RetryPolicy", "build_retrying"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds for one kind of remote call."""

    max_attempts: int = 5  # total attempts (initial + retries)
    base_delay_s: float = 0.5  # first backoff, doubled per attempt
    max_delay_s: float = 30.0  # cap for backoff and Retry-After hints
    jitter_s: float = 0.25  # uniform jitter added to each backoff
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0:
            raise ValueError(f"base_delay_s must be >= 0, got {self.base_delay_s}")
        if self.max_delay_s < 0:
            raise ValueError(f"max_delay_s must be >= 0, got {self.max_delay_s}")
        if self.jitter_s < 0:
            raise ValueError(f"jitter_s must be >= 0, got {self.jitter_s}")


class _WaitRetryAfter(tenacity.wait.wait_base):
    """Prefer the ``retry_after`` hint on the last exception over backoff."""

    def __init__(self, fallback: tenacity.wait.wait_base, cap_s: float) -> None:
        self.fallback = fallback
        self.cap_s = cap_s

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            retry_after = getattr(outcome.exception(), "retry_after", None)
            if retry_after is not None and retry_after > 0:
                wait_s = min(float(retry_after), self.cap_s)
                LOGGER.debug("Using retry_after hint: %.2fs (capped at %.2fs)", wait_s, self.cap_s)
                return wait_s
        return self.fallback(retry_state)


class _StopWhenCancelled(tenacity.stop.stop_base):
    """Stop retrying once the run's cancellation token fires."""

    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.token.is_cancelled()


def build_retrying(
    policy: RetryPolicy,
    *,
    retry_on: Callable[[BaseException], bool] = is_transient,
    cancel: Optional[CancellationToken] = None,
    operation: str = "remote call",
) -> tenacity.Retrying:
    """Build a Tenacity ``Retrying`` controller for ``policy``.

    Args:
        policy: Retry bounds and the sleep function to use.
        retry_on: Predicate selecting exceptions worth another attempt.
        cancel: Optional token; a cancelled run makes no further attempts.
        operation: Label used in retry log lines.

    Returns:
        A controller that re-raises the last exception when it gives up.
    """
    stop_policy: tenacity.stop.stop_base = tenacity.stop_after_attempt(policy.max_attempts)
    if cancel is not None:
        stop_policy = stop_policy | _StopWhenCancelled(cancel)

    backoff = tenacity.wait_exponential(
        multiplier=policy.base_delay_s, max=policy.max_delay_s
    ) + tenacity.wait_random(0, policy.jitter_s)

    retry_logger = logging.getLogger(f"{__name__}.{operation.replace(' ', '_')}")

    # Backoff sleeps wake early when the run is cancelled.
    sleep = policy.sleep
    if cancel is not None and sleep is time.sleep:
        sleep = cancel.wait

    return tenacity.Retrying(
        stop=stop_policy,
        wait=_WaitRetryAfter(backoff, cap_s=policy.max_delay_s),
        retry=retry_if_exception(retry_on),
        sleep=sleep,
        before_sleep=before_sleep_log(retry_logger, logging.WARNING),
        reraise=True,
    )
