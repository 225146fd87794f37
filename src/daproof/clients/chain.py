"""
Chain query client (read-only).

Two calls are needed by the verifier:
  - get_block(number)      -> Block(number, timestamp in seconds)
  - simulate_call(...)     -> SimulationResult (revert flag, return data, logs)

The JSON-RPC backend speaks plain `eth_getBlockByNumber` / `eth_call`. Plain
`eth_call` cannot expose logs of a non-mined call, so its results carry
`logs=None` and the event check degrades accordingly.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from daproof.clients.http import HttpPolicy, post_json
from daproof.errors import TransientError
from daproof.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("daproof.chain")

# JSON-RPC error code geth/erigon use for "execution reverted".
REVERT_ERROR_CODE = 3


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Block:
    number: int
    timestamp: int  # seconds

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp) * 1000


@dataclass(frozen=True, slots=True)
class SimulationResult:
    """
    reverted:     the call reverted at the requested block
    return_data:  raw ABI-encoded return value (empty on revert)
    logs:         decoded event logs when the backend can expose them, else None
    """
    reverted: bool
    return_data: bytes = b""
    logs: Optional[List[Json]] = None
    revert_reason: str = ""


def to_hex_quantity(n: int) -> str:
    """JSON-RPC quantity: lower-case hex, no leading zeros."""
    return "0x" + format(int(n), "x")


# ---------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------


@runtime_checkable
class ChainClient(Protocol):
    def get_block(self, number: int) -> Block: ...

    def simulate_call(self, contract: str, data: bytes, at_block: int) -> SimulationResult: ...


# ---------------------------------------------------------------------
# JSON-RPC backend
# ---------------------------------------------------------------------


def _is_revert_error(err: Json) -> bool:
    try:
        code = int(err.get("code"))
    except (TypeError, ValueError):
        code = 0
    msg = str(err.get("message") or "").lower()
    return code == REVERT_ERROR_CODE or "revert" in msg


class JsonRpcChainClient:
    """ChainClient over an HTTP JSON-RPC node."""

    def __init__(self, node_url: str, *, policy: Optional[HttpPolicy] = None) -> None:
        url = str(node_url or "").strip()
        if not url:
            raise ValueError("node_url is required")
        self.node_url = url
        self.policy = policy or HttpPolicy()
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _rpc(self, method: str, params: List[Any]) -> Json:
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}
        resp = post_json(self.node_url, payload, policy=self.policy, where=f"rpc:{method}")
        if not isinstance(resp, dict):
            raise TransientError(f"rpc:{method}", "non_object_response")
        return resp

    def get_block(self, number: int) -> Block:
        n = int(number)
        resp = self._rpc("eth_getBlockByNumber", [to_hex_quantity(n), False])
        err = resp.get("error")
        if err:
            raise TransientError("rpc:eth_getBlockByNumber", str(err))
        result = resp.get("result")
        if not isinstance(result, dict):
            # Node lagging behind the claimed block; retry later.
            raise TransientError("rpc:eth_getBlockByNumber", f"block_not_found:{n}")
        try:
            ts = int(str(result.get("timestamp")), 16)
        except (TypeError, ValueError) as e:
            raise TransientError("rpc:eth_getBlockByNumber", f"bad_timestamp:{result.get('timestamp')!r}") from e
        return Block(number=n, timestamp=ts)

    def simulate_call(self, contract: str, data: bytes, at_block: int) -> SimulationResult:
        call = {"to": str(contract), "data": "0x" + bytes(data).hex()}
        resp = self._rpc("eth_call", [call, to_hex_quantity(at_block)])

        err = resp.get("error")
        if isinstance(err, dict):
            if _is_revert_error(err):
                log_event(
                    log,
                    "simulation_reverted",
                    level=logging.DEBUG,
                    contract=contract,
                    block=int(at_block),
                    message=err.get("message"),
                )
                return SimulationResult(reverted=True, revert_reason=str(err.get("message") or ""))
            raise TransientError("rpc:eth_call", str(err.get("message") or err))
        if err:
            raise TransientError("rpc:eth_call", str(err))

        raw = str(resp.get("result") or "0x")
        try:
            out = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
        except ValueError as e:
            raise TransientError("rpc:eth_call", f"bad_result:{raw[:64]}") from e
        return SimulationResult(reverted=False, return_data=out, logs=None)
