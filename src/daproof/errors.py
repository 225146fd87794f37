from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ValidatorError(str, Enum):
    """Terminal verdict reasons (plus bookkeeping reasons for the failed-proof store)."""

    NO_SIGNATURE_SUBMITTER = "NO_SIGNATURE_SUBMITTER"
    INVALID_SIGNATURE_SUBMITTER = "INVALID_SIGNATURE_SUBMITTER"
    TIMESTAMP_PROOF_INVALID_SIGNATURE = "TIMESTAMP_PROOF_INVALID_SIGNATURE"
    TIMESTAMP_PROOF_INVALID_UPLOAD = "TIMESTAMP_PROOF_INVALID_UPLOAD"
    TIMESTAMP_PROOF_NOW_SUBMITTER = "TIMESTAMP_PROOF_NOW_SUBMITTER"
    BLOCK_MISMATCH = "BLOCK_MISMATCH"
    SIMULATION_REJECTED = "SIMULATION_REJECTED"
    EVENT_MISMATCH = "EVENT_MISMATCH"
    INVALID_EVENT_TIMESTAMP = "INVALID_EVENT_TIMESTAMP"
    INVALID_POINTER_SET_NOT_NEEDED = "INVALID_POINTER_SET_NOT_NEEDED"
    NOT_CLOSEST_BLOCK = "NOT_CLOSEST_BLOCK"

    INVALID_TYPED_DATA_DEADLINE_TIMESTAMP = "INVALID_TYPED_DATA_DEADLINE_TIMESTAMP"
    GENERATED_PUBLICATION_ID_MISMATCH = "GENERATED_PUBLICATION_ID_MISMATCH"
    POINTER_FAILED_VERIFICATION = "POINTER_FAILED_VERIFICATION"

    # failed-proof bookkeeping only; never returned by the engine as a verdict
    EXHAUSTED_RETRIES = "EXHAUSTED_RETRIES"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


class TransientError(Exception):
    """I/O fault (timeout, node down, index unavailable). Retried, never a verdict."""

    def __init__(self, where: str, message: str = "") -> None:
        self.where = str(where)
        self.message = str(message)
        super().__init__(f"{self.where}:{self.message}" if self.message else self.where)


@dataclass
class InvariantError(Exception):
    """Malformed payload or unknown submission type. Fatal to one task only."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"
