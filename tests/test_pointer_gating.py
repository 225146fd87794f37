from __future__ import annotations

from pathlib import Path

import pytest

from daproof.errors import ValidatorError
from daproof.models.result import Outcome, VerificationResult
from daproof.proofs.engine import ProofVerificationEngine
from daproof.storage.sqlite_db import SqliteDB, VerificationStore
from daproof.testing.fixtures import HUB_CONTRACT, SUBMITTER, FakeChainClient, make_submission


def _mk(tmp_path: Path):
    store = VerificationStore(db=SqliteDB(path=str(tmp_path / "daproof_test.db")))
    engine = ProofVerificationEngine(chain=FakeChainClient(), hub_contract=HUB_CONTRACT, submitters=[SUBMITTER], store=store)
    return engine, store


@pytest.mark.parametrize("kind", ["COMMENT", "MIRROR"])
def test_unresolved_pointer_is_transient(tmp_path: Path, kind: str) -> None:
    engine, _ = _mk(tmp_path)
    res = engine.verify(make_submission(kind, pointer="parent-1"))
    assert res.outcome == Outcome.TRANSIENT_FAILURE
    assert "pointer_unresolved" in res.detail


def test_valid_pointer_target_passes(tmp_path: Path) -> None:
    engine, store = _mk(tmp_path)
    store.put_result(VerificationResult.valid("parent-1"))
    res = engine.verify(make_submission("COMMENT", pointer="parent-1"))
    assert res.outcome == Outcome.VALID


def test_invalid_pointer_target_fails(tmp_path: Path) -> None:
    engine, store = _mk(tmp_path)
    store.put_result(VerificationResult.invalid("parent-1", ValidatorError.SIMULATION_REJECTED))
    res = engine.verify(make_submission("MIRROR", pointer="parent-1"))
    assert res.outcome == Outcome.INVALID
    assert res.reason == ValidatorError.POINTER_FAILED_VERIFICATION


def test_pointer_location_prefix_is_stripped() -> None:
    sub = make_submission("COMMENT", pointer="parent-xyz")
    assert sub.pointer is not None
    assert sub.pointer.location == "ar://parent-xyz"
    assert sub.pointer.target_id == "parent-xyz"


def test_on_chain_pointer_needs_no_lookup(tmp_path: Path) -> None:
    def _on_chain(p: dict) -> None:
        p["chainProofs"]["pointer"] = {"location": "0x01-0x01", "type": "ON_EVM_CHAIN"}

    engine, _ = _mk(tmp_path)
    res = engine.verify(make_submission("COMMENT", mutate=_on_chain))
    assert res.outcome == Outcome.VALID


def test_comment_without_pointer_is_allowed(tmp_path: Path) -> None:
    engine, _ = _mk(tmp_path)
    assert engine.verify(make_submission("COMMENT")).outcome == Outcome.VALID


@pytest.mark.parametrize("target", [None, "parent-1"])
def test_post_with_any_pointer_is_invalid(tmp_path: Path, target) -> None:
    engine, store = _mk(tmp_path)
    store.put_result(VerificationResult.valid("parent-1"))

    def _ptr(p: dict) -> None:
        p["chainProofs"]["pointer"] = {"location": f"ar://{target or 'x'}", "type": "ON_DA"}

    res = engine.verify(make_submission("POST", mutate=_ptr))
    assert res.reason == ValidatorError.INVALID_POINTER_SET_NOT_NEEDED
