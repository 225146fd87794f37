# src/daproof/crypto/receipt.py
from __future__ import annotations

"""Timestamp receipt verification.

A receipt is signed by the storage network node that accepted the upload.
The signed message is the deep hash of the version-prefixed field list:

    ["Bundlr", version, id, str(deadline_height), str(timestamp)]

and the signature is RSA-PSS (SHA-256) under the node's RSA key, whose
modulus is carried base64url-encoded in the receipt's `public` field.

Receipts with an unsupported version are rejected before any signature
check. This module is pure (no I/O).
"""

import base64
from typing import Any, Dict, FrozenSet, List

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from daproof.crypto.deep_hash import deep_hash

Json = Dict[str, Any]

RECEIPT_PREFIX = "Bundlr"
SUPPORTED_RECEIPT_VERSIONS: FrozenSet[str] = frozenset({"1.0.0"})
RSA_PUBLIC_EXPONENT = 65537


def b64url_decode(s: str) -> bytes:
    s = str(s or "").strip()
    if not s:
        raise ValueError("empty string")
    padding_ = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + padding_)


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def receipt_signing_chunks(*, version: str, receipt_id: str, deadline_height: int, timestamp: int) -> List[bytes]:
    return [
        RECEIPT_PREFIX.encode("utf-8"),
        str(version).encode("utf-8"),
        str(receipt_id).encode("utf-8"),
        str(int(deadline_height)).encode("utf-8"),
        str(int(timestamp)).encode("utf-8"),
    ]


def receipt_signing_message(*, version: str, receipt_id: str, deadline_height: int, timestamp: int) -> bytes:
    return deep_hash(
        receipt_signing_chunks(
            version=version,
            receipt_id=receipt_id,
            deadline_height=deadline_height,
            timestamp=timestamp,
        )
    )


def public_key_from_owner(owner_b64url: str) -> rsa.RSAPublicKey:
    n = int.from_bytes(b64url_decode(owner_b64url), "big")
    return rsa.RSAPublicNumbers(RSA_PUBLIC_EXPONENT, n).public_key()


def verify_receipt_signature(
    *,
    version: str,
    receipt_id: str,
    deadline_height: int,
    timestamp: int,
    public: str,
    signature: str,
) -> bool:
    """Return True iff the receipt's signature is valid under `public`.

    Unsupported versions return False regardless of the signature.
    """
    if str(version) not in SUPPORTED_RECEIPT_VERSIONS:
        return False

    try:
        key = public_key_from_owner(public)
        sig = b64url_decode(signature)
        msg = receipt_signing_message(
            version=version,
            receipt_id=receipt_id,
            deadline_height=deadline_height,
            timestamp=timestamp,
        )
        key.verify(
            sig,
            msg,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.AUTO),
            hashes.SHA256(),
        )
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def verify_receipt(receipt: Any) -> bool:
    """Verify a TimestampReceipt model (or any object with the same attributes)."""
    return verify_receipt_signature(
        version=receipt.version,
        receipt_id=receipt.id,
        deadline_height=receipt.deadline_height,
        timestamp=receipt.timestamp,
        public=receipt.public,
        signature=receipt.signature,
    )
