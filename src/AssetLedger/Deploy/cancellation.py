# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.cancellation",
#   "purpose": "Cooperative cancellation token and OS signal wiring for deployment runs",
#   "sections": [
#     {"id": "token", "name": "CancellationToken", "anchor": "TOK", "kind": "api"},
#     {"id": "signals", "name": "install_signal_handlers", "anchor": "SIG", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Cooperative cancellation for deployment runs.

An interrupt must stop new uploads and ledger submissions promptly while
letting in-flight calls finish, and the cache must be persisted before the
process exits. Threads are never interrupted; workers, the retry controller
and the rate limiter poll :class:`CancellationToken` instead.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
from typing import Iterator, Optional

__all__ = ["CancellationToken", "install_signal_handlers"]

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation token.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("SIGINT")
        >>> token.is_cancelled(), token.reason
        (True, 'SIGINT')
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation."""

        return self._event.wait(timeout)

    def reset(self) -> None:
        """Clear the token. Only for tests and controlled reuse."""

        with self._lock:
            self._event.clear()
            self.reason = None


@contextlib.contextmanager
def install_signal_handlers(
    token: CancellationToken, signals: tuple = (signal.SIGINT, signal.SIGTERM)
) -> Iterator[CancellationToken]:
    """Route ``signals`` to ``token`` for the duration of the block.

    The first signal cancels the token; later ones only repeat the warning so
    a cache write in progress is never torn. Previous handlers are restored on
    exit. Outside the main thread this is a no-op.
    """

    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if token.is_cancelled():
            logger.warning("%s received again; still finishing in-flight work", name)
            return
        logger.warning(
            "%s received; finishing in-flight uploads and saving the cache before exit", name
        )
        token.cancel(name)

    previous = {}
    for signum in signals:
        try:
            previous[signum] = signal.signal(signum, _handler)
        except (ValueError, OSError):  # pragma: no cover - platform without the signal
            continue
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
