# src/daproof/crypto/deep_hash.py
from __future__ import annotations

import hashlib
from typing import Sequence, Union

Chunk = Union[bytes, Sequence["Chunk"]]


def _sha384(b: bytes) -> bytes:
    return hashlib.sha384(b).digest()


def deep_hash(data: Chunk) -> bytes:
    """Storage-network deep hash (SHA-384, tagged by kind and length).

    blob: sha384(sha384("blob" + len) + sha384(data))
    list: fold sha384(acc + deep_hash(item)) starting from sha384("list" + len)
    """
    if isinstance(data, (bytes, bytearray)):
        tag = b"blob" + str(len(data)).encode("ascii")
        return _sha384(_sha384(tag) + _sha384(bytes(data)))

    items = list(data)
    acc = _sha384(b"list" + str(len(items)).encode("ascii"))
    for item in items:
        acc = _sha384(acc + deep_hash(item))
    return acc
