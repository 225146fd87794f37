"""
Per-variant publication checks.

Each submission variant owns:
  - its `*WithSig` request shape (typed-data fields + EIP-712 signature)
  - the event fields that must agree with what the contract would emit

`verify_publication()` replays the request as a read-only call at the claimed
block and compares the outcome with the submission's event.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from daproof.clients import abi
from daproof.clients.chain import ChainClient, SimulationResult
from daproof.errors import InvariantError, ValidatorError
from daproof.metrics import inc_counter
from daproof.models.submission import (
    CommentSubmission,
    MirrorSubmission,
    PostSubmission,
    hex_to_int,
)
from daproof.structured_logging import log_event

Json = Dict[str, Any]
AnySubmission = Union[PostSubmission, CommentSubmission, MirrorSubmission]

log = logging.getLogger("daproof.engine")

_degraded_warned = threading.Event()

# Event fields compared as integers / case-insensitively; the rest compare exactly.
_NUMERIC_FIELDS = frozenset({"profileId", "pubId", "profileIdPointed", "pubIdPointed", "timestamp"})
_HEX_FIELDS = frozenset(
    {
        "collectModule",
        "collectModuleReturnData",
        "referenceModule",
        "referenceModuleReturnData",
        "referenceModuleData",
    }
)


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EIP712Signature:
    v: int
    r: bytes
    s: bytes
    deadline: int

    @classmethod
    def from_hex(cls, signature: str, deadline: int) -> "EIP712Signature":
        v, r, s = abi.split_signature(signature)
        return cls(v=v, r=r, s=s, deadline=int(deadline))

    def as_tuple(self) -> Tuple[int, bytes, bytes, int]:
        return (self.v, self.r, self.s, self.deadline)


@dataclass(frozen=True, slots=True)
class PostWithSigRequest:
    profile_id: int
    content_uri: str
    collect_module: str
    collect_module_init_data: bytes
    reference_module: str
    reference_module_init_data: bytes
    sig: EIP712Signature

    FUNCTION = "postWithSig"
    ARG_TYPE = f"(uint256,string,address,bytes,address,bytes,{abi.SIGNATURE_TUPLE})"

    def encode(self) -> bytes:
        return abi.encode_call(
            self.FUNCTION,
            [self.ARG_TYPE],
            [
                (
                    self.profile_id,
                    self.content_uri,
                    self.collect_module,
                    self.collect_module_init_data,
                    self.reference_module,
                    self.reference_module_init_data,
                    self.sig.as_tuple(),
                )
            ],
        )


@dataclass(frozen=True, slots=True)
class CommentWithSigRequest:
    profile_id: int
    content_uri: str
    profile_id_pointed: int
    pub_id_pointed: int
    reference_module_data: bytes
    collect_module: str
    collect_module_init_data: bytes
    reference_module: str
    reference_module_init_data: bytes
    sig: EIP712Signature

    FUNCTION = "commentWithSig"
    ARG_TYPE = f"(uint256,string,uint256,uint256,bytes,address,bytes,address,bytes,{abi.SIGNATURE_TUPLE})"

    def encode(self) -> bytes:
        return abi.encode_call(
            self.FUNCTION,
            [self.ARG_TYPE],
            [
                (
                    self.profile_id,
                    self.content_uri,
                    self.profile_id_pointed,
                    self.pub_id_pointed,
                    self.reference_module_data,
                    self.collect_module,
                    self.collect_module_init_data,
                    self.reference_module,
                    self.reference_module_init_data,
                    self.sig.as_tuple(),
                )
            ],
        )


@dataclass(frozen=True, slots=True)
class MirrorWithSigRequest:
    profile_id: int
    profile_id_pointed: int
    pub_id_pointed: int
    reference_module_data: bytes
    reference_module: str
    reference_module_init_data: bytes
    sig: EIP712Signature

    FUNCTION = "mirrorWithSig"
    ARG_TYPE = f"(uint256,uint256,uint256,bytes,address,bytes,{abi.SIGNATURE_TUPLE})"

    def encode(self) -> bytes:
        return abi.encode_call(
            self.FUNCTION,
            [self.ARG_TYPE],
            [
                (
                    self.profile_id,
                    self.profile_id_pointed,
                    self.pub_id_pointed,
                    self.reference_module_data,
                    self.reference_module,
                    self.reference_module_init_data,
                    self.sig.as_tuple(),
                )
            ],
        )


WithSigRequest = Union[PostWithSigRequest, CommentWithSigRequest, MirrorWithSigRequest]


def build_request(sub: AnySubmission) -> WithSigRequest:
    """Reconstruct the exact signed request. ValueError on a malformed signature or field."""
    proof = sub.chain_proofs.this_publication
    v = proof.typed_data.value
    sig = EIP712Signature.from_hex(proof.signature, v.deadline)

    if isinstance(sub, PostSubmission):
        return PostWithSigRequest(
            profile_id=hex_to_int(v.profile_id),
            content_uri=v.content_uri,
            collect_module=abi.address(v.collect_module),
            collect_module_init_data=abi.hex_bytes(v.collect_module_init_data),
            reference_module=abi.address(v.reference_module),
            reference_module_init_data=abi.hex_bytes(v.reference_module_init_data),
            sig=sig,
        )
    if isinstance(sub, CommentSubmission):
        return CommentWithSigRequest(
            profile_id=hex_to_int(v.profile_id),
            content_uri=v.content_uri,
            profile_id_pointed=hex_to_int(v.profile_id_pointed),
            pub_id_pointed=hex_to_int(v.pub_id_pointed),
            reference_module_data=abi.hex_bytes(v.reference_module_data),
            collect_module=abi.address(v.collect_module),
            collect_module_init_data=abi.hex_bytes(v.collect_module_init_data),
            reference_module=abi.address(v.reference_module),
            reference_module_init_data=abi.hex_bytes(v.reference_module_init_data),
            sig=sig,
        )
    if isinstance(sub, MirrorSubmission):
        return MirrorWithSigRequest(
            profile_id=hex_to_int(v.profile_id),
            profile_id_pointed=hex_to_int(v.profile_id_pointed),
            pub_id_pointed=hex_to_int(v.pub_id_pointed),
            reference_module_data=abi.hex_bytes(v.reference_module_data),
            reference_module=abi.address(v.reference_module),
            reference_module_init_data=abi.hex_bytes(v.reference_module_init_data),
            sig=sig,
        )
    raise InvariantError("INVALID_PAYLOAD", "unknown_submission_variant", {"type": type(sub).__name__})


# ---------------------------------------------------------------------
# Event comparison
# ---------------------------------------------------------------------


def _norm(key: str, v: Any) -> Any:
    if key in _NUMERIC_FIELDS:
        return hex_to_int(v)
    if key in _HEX_FIELDS:
        return str(v or "0x").lower()
    return v


def _same(key: str, a: Any, b: Any) -> bool:
    try:
        return _norm(key, a) == _norm(key, b)
    except (TypeError, ValueError):
        return False


def event_matches_log(sub: AnySubmission, emitted: Json) -> bool:
    """Every event field must match the emitted log field-for-field."""
    expected = sub.event.model_dump(by_alias=True)
    return all(k in emitted and _same(k, v, emitted[k]) for k, v in expected.items())


def _signed_fields(sub: AnySubmission) -> List[str]:
    if isinstance(sub, PostSubmission):
        return ["profileId", "contentURI", "collectModule", "referenceModule"]
    if isinstance(sub, CommentSubmission):
        return [
            "profileId",
            "contentURI",
            "profileIdPointed",
            "pubIdPointed",
            "referenceModuleData",
            "collectModule",
            "referenceModule",
        ]
    return ["profileId", "profileIdPointed", "pubIdPointed", "referenceModuleData", "referenceModule"]


def event_matches_typed_data(sub: AnySubmission) -> bool:
    """Event fields that echo the signed request must equal the typed-data values."""
    event = sub.event.model_dump(by_alias=True)
    value = sub.chain_proofs.this_publication.typed_data.value.model_dump(by_alias=True)
    return all(_same(k, event.get(k), value.get(k)) for k in _signed_fields(sub))


def _degraded_event_check(sub: AnySubmission, sim: SimulationResult) -> Optional[ValidatorError]:
    inc_counter("event_check_degraded_total", 1)
    if not _degraded_warned.is_set():
        _degraded_warned.set()
        log_event(
            log,
            "event_check_degraded",
            level=logging.WARNING,
            note="chain client exposes no logs; comparing event with signed request and returned pubId",
        )
    else:
        log_event(log, "event_check_degraded", level=logging.DEBUG, id=sub.id)

    if not event_matches_typed_data(sub):
        return ValidatorError.EVENT_MISMATCH
    try:
        returned_pub_id = abi.decode_uint256(sim.return_data)
        expected_pub_id = hex_to_int(sub.event.pub_id)
    except ValueError:
        return ValidatorError.EVENT_MISMATCH
    if returned_pub_id != expected_pub_id:
        return ValidatorError.EVENT_MISMATCH
    return None


# ---------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------


def verify_publication(sub: AnySubmission, chain: ChainClient, *, hub_contract: str) -> Optional[ValidatorError]:
    """Replay the signed request at the claimed block. None means it checks out.

    TransientError from the chain client propagates.
    """
    try:
        request = build_request(sub)
        call_data = request.encode()
    except ValueError as e:
        log_event(log, "request_rebuild_failed", level=logging.DEBUG, id=sub.id, error=str(e))
        return ValidatorError.SIMULATION_REJECTED

    sim = chain.simulate_call(hub_contract, call_data, sub.block_number)
    if sim.reverted:
        log_event(log, "simulation_rejected", level=logging.DEBUG, id=sub.id, reason=sim.revert_reason)
        return ValidatorError.SIMULATION_REJECTED

    if sim.logs is None:
        return _degraded_event_check(sub, sim)

    if not sim.logs or not event_matches_log(sub, sim.logs[0]):
        return ValidatorError.EVENT_MISMATCH
    return None
