from __future__ import annotations

import urllib.error
from typing import Any, Dict, List

import pytest

from daproof.clients import chain as chain_mod
from daproof.clients import http as http_mod
from daproof.clients.chain import JsonRpcChainClient, to_hex_quantity
from daproof.clients.http import HttpPolicy, post_json
from daproof.errors import TransientError


class _Rpc:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, url: str, payload: Any, *, policy=None, headers=None, where: str = "http") -> Any:
        self.requests.append(payload)
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def test_hex_quantity() -> None:
    assert to_hex_quantity(0) == "0x0"
    assert to_hex_quantity(1000) == "0x3e8"


def test_get_block(monkeypatch: pytest.MonkeyPatch) -> None:
    rpc = _Rpc([{"jsonrpc": "2.0", "id": 1, "result": {"number": "0x3e8", "timestamp": "0x6553f100"}}])
    monkeypatch.setattr(chain_mod, "post_json", rpc)

    block = JsonRpcChainClient("http://node").get_block(1000)
    assert block.number == 1000
    assert block.timestamp == 0x6553F100
    assert block.timestamp_ms == 0x6553F100 * 1000
    assert rpc.requests[0]["method"] == "eth_getBlockByNumber"
    assert rpc.requests[0]["params"] == ["0x3e8", False]


@pytest.mark.parametrize(
    "resp",
    [{"result": None}, {"error": {"code": -32000, "message": "header not found"}}, {"result": {"timestamp": "zz"}}],
)
def test_get_block_failures_are_transient(monkeypatch: pytest.MonkeyPatch, resp) -> None:
    monkeypatch.setattr(chain_mod, "post_json", _Rpc([resp]))
    with pytest.raises(TransientError):
        JsonRpcChainClient("http://node").get_block(5)


def test_simulate_call_success(monkeypatch: pytest.MonkeyPatch) -> None:
    rpc = _Rpc([{"result": "0x" + "00" * 31 + "05"}])
    monkeypatch.setattr(chain_mod, "post_json", rpc)

    sim = JsonRpcChainClient("http://node").simulate_call("0xhub", b"\x01\x02", 1000)
    assert sim.reverted is False
    assert sim.return_data[-1] == 5
    assert sim.logs is None
    call, block = rpc.requests[0]["params"]
    assert call == {"to": "0xhub", "data": "0x0102"}
    assert block == "0x3e8"


@pytest.mark.parametrize(
    "err",
    [{"code": 3, "message": "execution reverted: SIGNATURE_EXPIRED"}, {"code": -32000, "message": "execution reverted"}],
)
def test_simulate_call_revert(monkeypatch: pytest.MonkeyPatch, err) -> None:
    monkeypatch.setattr(chain_mod, "post_json", _Rpc([{"error": err}]))
    sim = JsonRpcChainClient("http://node").simulate_call("0xhub", b"", 1)
    assert sim.reverted is True
    assert "reverted" in sim.revert_reason


def test_simulate_call_node_error_is_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(chain_mod, "post_json", _Rpc([{"error": {"code": -32005, "message": "rate limited"}}]))
    with pytest.raises(TransientError) as ei:
        JsonRpcChainClient("http://node").simulate_call("0xhub", b"", 1)
    assert ei.value.where == "rpc:eth_call"


def test_node_url_required() -> None:
    with pytest.raises(ValueError):
        JsonRpcChainClient("  ")


def test_post_json_retries_then_surfaces_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def _fail(url, body, *, timeout_s, headers):
        calls.append(timeout_s)
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(http_mod, "_post_once", _fail)
    with pytest.raises(TransientError) as ei:
        post_json("http://node", {"a": 1}, policy=HttpPolicy(timeout_s=1.5, retries=3, retry_delay_ms=0), where="rpc:x")
    assert ei.value.where == "rpc:x"
    # first try plus three retries
    assert calls == [1.5, 1.5, 1.5, 1.5]


def test_post_json_recovers_after_a_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    outcomes: List[Any] = [TimeoutError("timed out"), {"ok": True}]

    def _flaky(url, body, *, timeout_s, headers):
        r = outcomes.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    monkeypatch.setattr(http_mod, "_post_once", _flaky)
    assert post_json("http://node", {}, policy=HttpPolicy(retries=3, retry_delay_ms=0)) == {"ok": True}


def test_zero_retries_means_a_single_try(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def _fail(url, body, *, timeout_s, headers):
        calls.append(url)
        raise ConnectionError("reset")

    monkeypatch.setattr(http_mod, "_post_once", _fail)
    with pytest.raises(TransientError):
        post_json("http://node", {}, policy=HttpPolicy(retries=0, retry_delay_ms=0))
    assert calls == ["http://node"]
