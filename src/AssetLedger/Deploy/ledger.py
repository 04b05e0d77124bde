# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.ledger",
#   "purpose": "Ledger client contract and the JSON-RPC adapter over HTTPX",
#   "sections": [
#     {"id": "registration", "name": "Registration", "anchor": "class-registration", "kind": "class"},
#     {"id": "ledgerclient", "name": "LedgerClient", "anchor": "class-ledgerclient", "kind": "class"},
#     {"id": "jsonrpcledgerclient", "name": "JsonRpcLedgerClient", "anchor": "class-jsonrpcledgerclient", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Remote ledger clients.

The ledger is an append-only configuration structure with positional item
slots. The pipeline needs four capabilities::

    create_ledger(capacity) -> ledger_id
    current_registered_count(ledger_id) -> int
    submit_batch(ledger_id, [Registration, ...]) -> None   # returns once confirmed
    get_registered(ledger_id, index) -> (media_uri, metadata_uri) | None

Failures come in three shapes: :class:`TransientLedgerError` (retry),
:class:`LedgerConflictError` (reconcile, then retry once) and
:class:`FatalLedgerError` (abort the run).

:class:`JsonRpcLedgerClient` speaks JSON-RPC 2.0 to a ledger gateway. A batch
submission returns a transaction id which is polled until it is confirmed or
failed; a confirmation that never arrives is transient, because the
reconciler will notice if the transaction landed after all.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import httpx

from AssetLedger.Deploy.errors import (
    FatalLedgerError,
    LedgerConflictError,
    TransientLedgerError,
)
from AssetLedger.Deploy.storage import TRANSIENT_STATUSES, parse_retry_after

__all__ = [
    "Registration",
    "LedgerClient",
    "JsonRpcLedgerClient",
    "RPC_CONGESTED",
    "RPC_EXPIRED",
    "RPC_SLOT_FILLED",
    "RPC_COUNT_MISMATCH",
]

logger = logging.getLogger(__name__)

RPC_CONGESTED = -32005
RPC_EXPIRED = -32006
RPC_SLOT_FILLED = -32010
RPC_COUNT_MISMATCH = -32011

_TRANSIENT_RPC_CODES = frozenset({RPC_CONGESTED, RPC_EXPIRED})
_CONFLICT_RPC_CODES = frozenset({RPC_SLOT_FILLED, RPC_COUNT_MISMATCH})


@dataclass(frozen=True)
class Registration:
    """One ``index -> URIs`` line written to the ledger."""

    index: int
    media_uri: str
    metadata_uri: str

    def to_wire(self) -> Dict[str, Any]:
        return {"index": self.index, "media_uri": self.media_uri, "metadata_uri": self.metadata_uri}


@runtime_checkable
class LedgerClient(Protocol):
    def create_ledger(self, capacity: int) -> str:
        ...

    def current_registered_count(self, ledger_id: str) -> int:
        ...

    def submit_batch(self, ledger_id: str, items: Sequence[Registration]) -> None:
        ...

    def get_registered(self, ledger_id: str, index: int) -> Optional[Tuple[str, str]]:
        ...


class JsonRpcLedgerClient:
    """JSON-RPC 2.0 ledger gateway client."""

    def __init__(
        self,
        rpc_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        confirm_timeout_s: float = 90.0,
        poll_interval_s: float = 1.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpc_url = rpc_url
        self.api_key = api_key
        self.confirm_timeout_s = confirm_timeout_s
        self.poll_interval_s = poll_interval_s
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_s))
        self._ids = itertools.count(1)
        self._sleep = sleep
        self._now = clock

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "JsonRpcLedgerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    def _call(self, method: str, params: Dict[str, Any]) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.post(self.rpc_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientLedgerError(f"{method} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientLedgerError(f"{method} failed: {exc}") from exc

        status = response.status_code
        if status in TRANSIENT_STATUSES:
            raise TransientLedgerError(
                f"{method}: ledger gateway returned HTTP {status}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status in (401, 403):
            raise FatalLedgerError(f"{method}: ledger gateway rejected credentials (HTTP {status})")
        if status >= 400:
            raise FatalLedgerError(f"{method}: ledger gateway returned HTTP {status}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientLedgerError(f"{method}: malformed JSON-RPC reply") from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error and not isinstance(error, dict):
            raise FatalLedgerError(f"{method}: malformed JSON-RPC error: {error!r}")
        if error:
            code = error.get("code")
            message = f"{method}: {error.get('message', 'ledger error')} (code {code})"
            if code in _TRANSIENT_RPC_CODES:
                raise TransientLedgerError(message)
            if code in _CONFLICT_RPC_CODES:
                raise LedgerConflictError(message)
            raise FatalLedgerError(message)

        if not isinstance(payload, dict) or "result" not in payload:
            raise TransientLedgerError(f"{method}: JSON-RPC reply without a result")
        return payload["result"]

    # ------------------------------------------------------------------ #
    # Ledger operations
    # ------------------------------------------------------------------ #

    def create_ledger(self, capacity: int) -> str:
        result = self._call("ledger_create", {"capacity": capacity})
        ledger_id = result.get("ledger_id") if isinstance(result, dict) else result
        if not isinstance(ledger_id, str) or not ledger_id:
            raise FatalLedgerError("ledger_create returned no ledger_id")
        logger.info("Created ledger %s with capacity %d", ledger_id, capacity)
        return ledger_id

    def current_registered_count(self, ledger_id: str) -> int:
        result = self._call("ledger_registeredCount", {"ledger_id": ledger_id})
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise TransientLedgerError(f"ledger_registeredCount returned {result!r}") from exc

    def get_registered(self, ledger_id: str, index: int) -> Optional[Tuple[str, str]]:
        result = self._call("ledger_getRegistered", {"ledger_id": ledger_id, "index": index})
        if result is None:
            return None
        try:
            return str(result["media_uri"]), str(result["metadata_uri"])
        except (KeyError, TypeError) as exc:
            raise TransientLedgerError(
                f"ledger_getRegistered returned malformed item for index {index}"
            ) from exc

    def submit_batch(self, ledger_id: str, items: Sequence[Registration]) -> None:
        if not items:
            return
        result = self._call(
            "ledger_submitBatch",
            {"ledger_id": ledger_id, "items": [item.to_wire() for item in items]},
        )
        tx_id = result.get("tx_id") if isinstance(result, dict) else result
        if not isinstance(tx_id, str) or not tx_id:
            raise FatalLedgerError("ledger_submitBatch returned no transaction id")
        logger.debug(
            "Submitted batch %d..%d as %s", items[0].index, items[-1].index, tx_id
        )
        self._await_confirmation(tx_id)

    def _await_confirmation(self, tx_id: str) -> None:
        deadline = self._now() + self.confirm_timeout_s
        while True:
            result = self._call("ledger_getTransaction", {"tx_id": tx_id})
            status = result.get("status") if isinstance(result, dict) else None
            if status == "confirmed":
                logger.debug("Transaction %s confirmed", tx_id)
                return
            if status == "failed":
                reason = result.get("reason", "unknown")
                if result.get("conflict"):
                    raise LedgerConflictError(f"Transaction {tx_id} failed: {reason}")
                raise FatalLedgerError(f"Transaction {tx_id} failed: {reason}")
            if self._now() >= deadline:
                raise TransientLedgerError(
                    f"Transaction {tx_id} not confirmed within {self.confirm_timeout_s:.0f}s"
                )
            self._sleep(self.poll_interval_s)
