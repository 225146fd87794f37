# src/daproof/storage/failed_proofs.py
from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from daproof.errors import ValidatorError

Json = Dict[str, Any]

_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FailedProofRecord:
    """Append-only audit entry for one terminally failed submission."""

    submission_id: str
    reason: ValidatorError
    detail: str = ""
    attempt: int = 0
    recorded_ms: int = field(default_factory=_now_ms)
    submission: Optional[Json] = None

    def to_json(self) -> Json:
        return {
            "submission_id": self.submission_id,
            "reason": self.reason.value,
            "detail": self.detail,
            "attempt": int(self.attempt),
            "recorded_ms": int(self.recorded_ms),
            "submission": self.submission,
        }

    @classmethod
    def from_json(cls, obj: Json) -> "FailedProofRecord":
        return cls(
            submission_id=str(obj["submission_id"]),
            reason=ValidatorError(str(obj["reason"])),
            detail=str(obj.get("detail") or ""),
            attempt=int(obj.get("attempt") or 0),
            recorded_ms=int(obj.get("recorded_ms") or 0),
            submission=obj.get("submission"),
        )


class FailedProofStore:
    """One JSON file per submission id under <root>/<reason>/<submission_id>.json.

    Writing an id that already has a record (under any reason) is a no-op.
    Files are written to a temp name and renamed so readers never see a
    partial record.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    @staticmethod
    def _check_id(submission_id: str) -> str:
        sid = str(submission_id or "").strip()
        if not sid or not _SAFE_ID.match(sid):
            raise ValueError(f"unsafe submission id for a file name: {submission_id!r}")
        return sid

    def path_for(self, reason: ValidatorError, submission_id: str) -> Path:
        return self.root / ValidatorError(reason).value / f"{self._check_id(submission_id)}.json"

    def find(self, submission_id: str) -> Optional[Path]:
        sid = self._check_id(submission_id)
        if not self.root.exists():
            return None
        for p in sorted(self.root.glob(f"*/{sid}.json")):
            return p
        return None

    def exists(self, submission_id: str) -> bool:
        return self.find(submission_id) is not None

    def write(self, record: FailedProofRecord) -> bool:
        """Persist a record. Returns False if the id was already recorded.

        OSError propagates so the caller can retry later; an id that cannot
        name a file raises ValueError.
        """
        if self.exists(record.submission_id):
            return False
        path = self.path_for(record.reason, record.submission_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(f".json.{os.getpid()}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record.to_json(), f, sort_keys=True, indent=2, default=str)
        os.replace(tmp, path)
        return True

    def read(self, submission_id: str) -> Optional[FailedProofRecord]:
        p = self.find(submission_id)
        if p is None:
            return None
        with open(p, "r", encoding="utf-8") as f:
            return FailedProofRecord.from_json(json.load(f))

    def list_ids(self, reason: Optional[ValidatorError] = None) -> List[str]:
        if not self.root.exists():
            return []
        pattern = f"{ValidatorError(reason).value}/*.json" if reason is not None else "*/*.json"
        return sorted(p.stem for p in self.root.glob(pattern))
