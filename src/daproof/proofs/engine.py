# src/daproof/proofs/engine.py
from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

from daproof.clients.chain import ChainClient
from daproof.crypto.receipt import verify_receipt
from daproof.crypto.submitter_sig import recover_submitter
from daproof.errors import TransientError, ValidatorError
from daproof.metrics import inc_counter
from daproof.models.result import Outcome, VerificationResult
from daproof.models.submission import (
    CommentSubmission,
    MirrorSubmission,
    PointerType,
    PostSubmission,
)
from daproof.proofs.closest_block import BlockSource, validate_chosen_block
from daproof.proofs.publications import verify_publication
from daproof.storage.sqlite_db import VerificationStore
from daproof.structured_logging import log_event

AnySubmission = Union[PostSubmission, CommentSubmission, MirrorSubmission]

log = logging.getLogger("daproof.engine")


def generate_publication_id(sub: AnySubmission) -> str:
    return f"{sub.event.profile_id}-{sub.event.pub_id}-DA-{sub.data_availability_id.split('-')[0]}"


class ProofVerificationEngine:
    """Per-submission verification: VALID, INVALID(reason) or TRANSIENT_FAILURE.

    Checks run in a fixed order and stop at the first rejection:

      0. POST carrying a pointer
      1. submitter signature over the document
      2. timestamp receipt signature
      3. declared upload (type, data availability id) and submitter whitelist
      4. event timestamp / typed-data deadline vs block timestamp
      5. closest block
      6. pointer target already VALID
      7. simulated call + event check
      8. declared publication id

    Any TransientError raised by a collaborator yields TRANSIENT_FAILURE. The
    engine never writes results; callers route them (see queue.router).
    """

    def __init__(
        self,
        *,
        chain: ChainClient,
        hub_contract: str,
        submitters: Sequence[str],
        store: Optional[VerificationStore] = None,
    ) -> None:
        self._chain = chain
        self._hub_contract = str(hub_contract)
        self._submitters = frozenset(str(s).strip().lower() for s in submitters)
        self._store = store
        self._blocks = BlockSource(chain, store)

    def verify(self, sub: AnySubmission, *, use_cache: bool = True) -> VerificationResult:
        sid = sub.id

        if use_cache and self._store is not None:
            prior = self._store.get_result(sid)
            if prior is not None:
                log_event(log, "already_checked", level=logging.DEBUG, id=sid, outcome=prior.outcome.value)
                return prior

        try:
            reason = self._check(sub, use_cache=use_cache)
        except TransientError as e:
            inc_counter("verifications_transient_total", 1)
            log_event(log, "verification_transient", level=logging.INFO, id=sid, where=e.where, error=e.message)
            return VerificationResult.transient(sid, detail=str(e))

        if reason is None:
            result = VerificationResult.valid(sid)
        else:
            result = VerificationResult.invalid(sid, reason)

        inc_counter(f"verifications_{result.outcome.value.lower()}_total", 1)
        log_event(
            log,
            "verification_result",
            level=logging.INFO if result.outcome == Outcome.VALID else logging.WARNING,
            id=sid,
            type=sub.type,
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason is not None else None,
        )
        return result

    # ------------------------------------------------------------------

    def _check(self, sub: AnySubmission, *, use_cache: bool) -> Optional[ValidatorError]:
        pointer = sub.pointer

        if isinstance(sub, PostSubmission) and pointer is not None:
            return ValidatorError.INVALID_POINTER_SET_NOT_NEEDED

        if not sub.signature or sub.signature == "0x":
            return ValidatorError.NO_SIGNATURE_SUBMITTER
        signer = recover_submitter(sub.signed_message, sub.signature)
        if signer is None or signer not in self._submitters:
            return ValidatorError.INVALID_SIGNATURE_SUBMITTER

        receipt = sub.timestamp_proofs.receipt
        if not verify_receipt(receipt):
            return ValidatorError.TIMESTAMP_PROOF_INVALID_SIGNATURE

        upload = sub.proof_upload
        if upload is None or upload.type != sub.type or upload.data_availability_id != sub.data_availability_id:
            return ValidatorError.TIMESTAMP_PROOF_INVALID_UPLOAD
        if upload.uploader.lower() not in self._submitters:
            return ValidatorError.TIMESTAMP_PROOF_NOW_SUBMITTER
        if sub.submitter and sub.submitter.lower() not in self._submitters:
            return ValidatorError.TIMESTAMP_PROOF_NOW_SUBMITTER

        if int(sub.event.timestamp) != sub.block_timestamp:
            return ValidatorError.INVALID_EVENT_TIMESTAMP
        if int(sub.chain_proofs.this_publication.typed_data.value.deadline) != sub.block_timestamp:
            return ValidatorError.INVALID_TYPED_DATA_DEADLINE_TIMESTAMP

        rejected = validate_chosen_block(
            self._blocks,
            block_number=sub.block_number,
            block_timestamp=sub.block_timestamp,
            target_ms=int(receipt.timestamp),
            use_cache=use_cache,
        )
        if rejected is not None:
            return rejected

        if pointer is not None and pointer.type == PointerType.ON_DA:
            rejected = self._check_pointer(pointer.target_id)
            if rejected is not None:
                return rejected

        rejected = verify_publication(sub, self._chain, hub_contract=self._hub_contract)
        if rejected is not None:
            return rejected

        if sub.publication_id and sub.publication_id != generate_publication_id(sub):
            return ValidatorError.GENERATED_PUBLICATION_ID_MISMATCH

        return None

    def _check_pointer(self, target_id: str) -> Optional[ValidatorError]:
        # Targets may be discovered after their dependents; unresolved means retry later.
        target = self._store.get_result(target_id) if self._store is not None else None
        if target is None:
            raise TransientError("pointer_unresolved", target_id)
        if target.outcome == Outcome.INVALID:
            return ValidatorError.POINTER_FAILED_VERIFICATION
        return None
