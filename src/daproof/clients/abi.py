# src/daproof/clients/abi.py
from __future__ import annotations

"""Call-data encoding for simulated contract calls."""

from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import EncodingError
from eth_utils import decode_hex, function_signature_to_4byte_selector, to_checksum_address

SIGNATURE_TUPLE = "(uint8,bytes32,bytes32,uint256)"


def function_selector(signature: str) -> bytes:
    return bytes(function_signature_to_4byte_selector(signature))


def encode_call(name: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    """selector(name(arg_types)) + abi.encode(args). ValueError if args do not fit the types."""
    sig = f"{name}({','.join(arg_types)})"
    try:
        encoded = encode(list(arg_types), list(args))
    except EncodingError as e:
        raise ValueError(f"cannot encode {name}: {e}") from e
    return function_selector(sig) + bytes(encoded)


def decode_uint256(data: bytes) -> int:
    if len(data) < 32:
        raise ValueError(f"return data too short: {len(data)} bytes")
    (v,) = decode(["uint256"], bytes(data[:32]))
    return int(v)


def address(v: str) -> str:
    return str(to_checksum_address(str(v)))


def hex_bytes(v: str) -> bytes:
    s = str(v or "0x")
    return bytes(decode_hex(s)) if s not in ("", "0x") else b""


def split_signature(sig_hex: str) -> Tuple[int, bytes, bytes]:
    """Split a 65-byte r||s||v signature. v is normalized to 27/28."""
    raw = hex_bytes(sig_hex)
    if len(raw) != 65:
        raise ValueError(f"signature must be 65 bytes, got {len(raw)}")
    r = raw[0:32]
    s = raw[32:64]
    v = raw[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise ValueError(f"bad signature v: {v}")
    return v, r, s
