# src/daproof/crypto/submitter_sig.py
from __future__ import annotations

"""Submitter signatures over submission documents.

A submitter signs the compact JSON of its submission document with the
`signature` key removed, keys in upload order, as an EIP-191 personal
message. Recovering the signer and checking it against the whitelist proves
the document came from a trusted submitter.
"""

import json
from typing import Any, Dict, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError

Json = Dict[str, Any]


def submission_signing_message(document: Mapping[str, Any]) -> str:
    """The exact text a submitter signs for `document`."""
    unsigned = {k: v for k, v in document.items() if k != "signature"}
    return json.dumps(unsigned, separators=(",", ":"), ensure_ascii=False)


def recover_submitter(message: str, signature: str) -> Optional[str]:
    """Lower-cased signer address, or None when the signature is unusable."""
    if not message or not signature:
        return None
    try:
        addr = Account.recover_message(encode_defunct(text=message), signature=signature)
    except (ValueError, TypeError, BadSignature, ValidationError):
        return None
    return str(addr).lower()


def sign_submission(document: Json, private_key: Any) -> str:
    """0x-prefixed 65-byte signature of `document` under `private_key`."""
    signed = Account.sign_message(encode_defunct(text=submission_signing_message(document)), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()
