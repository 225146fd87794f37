# src/daproof/models/result.py
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from daproof.errors import ValidatorError

Json = Dict[str, Any]


class Outcome(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification. `reason` is set only for INVALID."""

    submission_id: str
    outcome: Outcome
    reason: Optional[ValidatorError] = None
    detail: str = ""
    checked_ms: int = 0

    @classmethod
    def valid(cls, submission_id: str) -> "VerificationResult":
        return cls(submission_id=str(submission_id), outcome=Outcome.VALID, checked_ms=_now_ms())

    @classmethod
    def invalid(cls, submission_id: str, reason: ValidatorError, detail: str = "") -> "VerificationResult":
        return cls(
            submission_id=str(submission_id),
            outcome=Outcome.INVALID,
            reason=ValidatorError(reason),
            detail=str(detail),
            checked_ms=_now_ms(),
        )

    @classmethod
    def transient(cls, submission_id: str, detail: str = "") -> "VerificationResult":
        return cls(
            submission_id=str(submission_id),
            outcome=Outcome.TRANSIENT_FAILURE,
            detail=str(detail),
            checked_ms=_now_ms(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (Outcome.VALID, Outcome.INVALID)

    def to_json(self) -> Json:
        return {
            "submission_id": self.submission_id,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason is not None else None,
            "detail": self.detail,
            "checked_ms": int(self.checked_ms),
        }

    @classmethod
    def from_json(cls, obj: Json) -> "VerificationResult":
        reason = obj.get("reason")
        return cls(
            submission_id=str(obj.get("submission_id") or ""),
            outcome=Outcome(str(obj.get("outcome"))),
            reason=ValidatorError(reason) if reason else None,
            detail=str(obj.get("detail") or ""),
            checked_ms=int(obj.get("checked_ms") or 0),
        )
