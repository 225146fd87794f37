# src/daproof/testing/fixtures.py
from __future__ import annotations

"""Test helpers: signed receipts, submission builders and in-process fakes.

Receipts are signed with a real RSA key so the verifier's signature path runs
unchanged. Fakes are thread-safe because worker pools call them concurrently.
"""

import base64
import copy
import json
import threading
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from eth_account import Account

from daproof.clients.chain import Block, SimulationResult
from daproof.clients.index import BulkTx, BulkTxsResponse, DroppedSubmission, PageInfo, SubmissionEdge, SubmissionPage
from daproof.crypto.receipt import b64url_encode, receipt_signing_message
from daproof.crypto.submitter_sig import sign_submission
from daproof.errors import TransientError
from daproof.models.submission import parse_submission
from daproof.submitters import Deployment, Environment, network_profile

Json = Dict[str, Any]

ENVIRONMENT = Environment.MUMBAI
DEPLOYMENT = Deployment.STAGING
# throwaway key; node tests add its address through `extra_submitters`
SUBMITTER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
SUBMITTER = Account.from_key(SUBMITTER_KEY).address.lower()
OTHER_KEY = "0x" + "7d" * 32
HUB_CONTRACT = network_profile(ENVIRONMENT, DEPLOYMENT).hub_contract
NOT_A_SUBMITTER = "0x" + "ab" * 20

BLOCK_NUMBER = 1_000
BLOCK_TIMESTAMP = 1_700_000_000  # seconds
BLOCK_SPACING_S = 2
PUB_ID = 5

ZERO_ADDRESS = "0x" + "00" * 20
COLLECT_MODULE = "0x" + "11" * 20

KIND_TO_TYPE = {"POST": "POST_CREATED", "COMMENT": "COMMENT_CREATED", "MIRROR": "MIRROR_CREATED"}


# ---------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------


@lru_cache(maxsize=1)
def receipt_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def receipt_public() -> str:
    n = receipt_key().public_key().public_numbers().n
    return b64url_encode(n.to_bytes((n.bit_length() + 7) // 8, "big"))


def sign_receipt(*, receipt_id: str, timestamp: int, deadline_height: int = 1_200_000, version: str = "1.0.0") -> Json:
    msg = receipt_signing_message(
        version=version,
        receipt_id=receipt_id,
        deadline_height=deadline_height,
        timestamp=timestamp,
    )
    sig = receipt_key().sign(
        msg,
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
        hashes.SHA256(),
    )
    return {
        "id": receipt_id,
        "public": receipt_public(),
        "signature": b64url_encode(sig),
        "version": version,
        "block": 0,
        "deadlineHeight": deadline_height,
        "validatorSignatures": [],
        "timestamp": timestamp,
    }


# ---------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------


def chain_signature() -> str:
    """65-byte r||s||v with v=27. Content is irrelevant to the fakes."""
    return "0x" + "22" * 32 + "33" * 32 + "1b"


def submission_payload(
    kind: str = "POST",
    *,
    da_id: str = "a1b2c3d4-0000-4000-8000-000000000001",
    proof_id: str = "proof-tx-1",
    pointer: Optional[str] = None,
    block_number: int = BLOCK_NUMBER,
    block_timestamp: int = BLOCK_TIMESTAMP,
    receipt_timestamp_ms: Optional[int] = None,
) -> Json:
    """A well-formed submission document (wire shape, camelCase), signed by SUBMITTER."""
    kind = kind.upper()
    ts_ms = receipt_timestamp_ms if receipt_timestamp_ms is not None else block_timestamp * 1000 + 500

    value: Json = {"profileId": "0x01", "nonce": 0, "deadline": block_timestamp}
    event: Json = {"profileId": "0x01", "pubId": hex(PUB_ID), "timestamp": block_timestamp}

    if kind in ("POST", "COMMENT"):
        value.update(
            {
                "contentURI": "ar://content",
                "collectModule": COLLECT_MODULE,
                "collectModuleInitData": "0x",
            }
        )
        event.update(
            {
                "contentURI": "ar://content",
                "collectModule": COLLECT_MODULE,
                "collectModuleReturnData": "0x",
            }
        )
    if kind in ("COMMENT", "MIRROR"):
        pointed = {"profileIdPointed": "0x02", "pubIdPointed": "0x01", "referenceModuleData": "0x"}
        value.update(pointed)
        event.update(pointed)
    value.update({"referenceModule": ZERO_ADDRESS, "referenceModuleInitData": "0x"})
    event.update({"referenceModule": ZERO_ADDRESS, "referenceModuleReturnData": "0x"})

    doc: Json = {
        "dataAvailabilityId": da_id,
        "signature": "0x",
        "type": KIND_TO_TYPE[kind],
        "timestampProofs": {
            "type": "BUNDLR",
            "hashPrefix": "1",
            "response": sign_receipt(receipt_id=proof_id, timestamp=ts_ms),
        },
        "chainProofs": {
            "thisPublication": {
                "signature": chain_signature(),
                "signedByDelegate": False,
                "signatureDeadline": block_timestamp,
                "typedData": {
                    "domain": {
                        "name": "Lens Protocol Profiles",
                        "version": "1",
                        "chainId": 80001,
                        "verifyingContract": HUB_CONTRACT,
                    },
                    "types": {},
                    "value": value,
                },
                "blockHash": "0x" + "44" * 32,
                "blockNumber": block_number,
                "blockTimestamp": block_timestamp,
            },
            "pointer": {"location": f"ar://{pointer}", "type": "ON_DA"} if pointer else None,
        },
        "publicationId": f"0x01-{hex(PUB_ID)}-DA-{da_id.split('-')[0]}",
        "event": event,
    }
    doc["signature"] = sign_submission(doc, SUBMITTER_KEY)
    return doc


def proof_upload_for(payload: Json, *, uploader: str = SUBMITTER) -> Json:
    return {"type": payload["type"], "dataAvailabilityId": payload["dataAvailabilityId"], "uploader": uploader}


def make_submission(
    kind: str = "POST",
    *,
    submission_id: str = "sub-1",
    mutate: Optional[Callable[[Json], None]] = None,
    uploader: str = SUBMITTER,
    proof_upload: Optional[Json] = None,
    sign_with: Optional[str] = SUBMITTER_KEY,
    **payload_kwargs: Any,
):
    """Parsed submission. `sign_with=None` keeps whatever signature `mutate` left."""
    payload = submission_payload(kind, **payload_kwargs)
    if mutate is not None:
        mutate(payload)
    if sign_with is not None:
        # re-sign so mutations only break the check they target
        payload["signature"] = sign_submission(payload, sign_with)
    return parse_submission(
        payload,
        submission_id=submission_id,
        submitter=SUBMITTER,
        proof_upload=proof_upload if proof_upload is not None else proof_upload_for(payload, uploader=uploader),
    )


def encode_b64_json(obj: Any) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode("utf-8")).decode("ascii").rstrip("=")


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------


def default_blocks(center: int = BLOCK_NUMBER, center_ts: int = BLOCK_TIMESTAMP) -> Dict[int, int]:
    return {n: center_ts + (n - center) * BLOCK_SPACING_S for n in range(center - 10, center + 11)}


class FakeChainClient:
    """In-memory ChainClient.

    - blocks: number -> timestamp (seconds)
    - reverted / return_pub_id / logs control simulate_call
    - fail_simulations: the next N simulate_call invocations raise TransientError
    - call_delay_s: sleep inside simulate_call (concurrency tests)
    """

    def __init__(
        self,
        blocks: Optional[Dict[int, int]] = None,
        *,
        reverted: bool = False,
        return_pub_id: int = PUB_ID,
        logs: Optional[List[Json]] = None,
        fail_simulations: int = 0,
        fail_blocks: bool = False,
        call_delay_s: float = 0.0,
    ) -> None:
        self.blocks = dict(blocks if blocks is not None else default_blocks())
        self.reverted = reverted
        self.return_pub_id = int(return_pub_id)
        self.logs = logs
        self.fail_simulations = int(fail_simulations)
        self.fail_blocks = bool(fail_blocks)
        self.call_delay_s = float(call_delay_s)

        self._lock = threading.Lock()
        self.block_calls: List[int] = []
        self.sim_calls: List[Json] = []
        self._inflight = 0
        self.max_inflight = 0

    def get_block(self, number: int) -> Block:
        with self._lock:
            self.block_calls.append(int(number))
        if self.fail_blocks:
            raise TransientError("rpc:eth_getBlockByNumber", "timeout")
        if int(number) not in self.blocks:
            raise TransientError("rpc:eth_getBlockByNumber", f"block_not_found:{number}")
        return Block(number=int(number), timestamp=int(self.blocks[int(number)]))

    def simulate_call(self, contract: str, data: bytes, at_block: int) -> SimulationResult:
        with self._lock:
            self.sim_calls.append({"contract": contract, "data": bytes(data), "at_block": int(at_block)})
            self._inflight += 1
            self.max_inflight = max(self.max_inflight, self._inflight)
            fail = self.fail_simulations > 0
            if fail:
                self.fail_simulations -= 1
        try:
            if self.call_delay_s:
                time.sleep(self.call_delay_s)
            if fail:
                raise TransientError("rpc:eth_call", "timeout")
            if self.reverted:
                return SimulationResult(reverted=True, revert_reason="execution reverted")
            return SimulationResult(
                reverted=False,
                return_data=int(self.return_pub_id).to_bytes(32, "big"),
                logs=copy.deepcopy(self.logs) if self.logs is not None else None,
            )
        finally:
            with self._lock:
                self._inflight -= 1


@dataclass
class FakeIndexClient:
    """Serves pre-built pages keyed by the `after` cursor (None = first page)."""

    pages: Dict[Optional[str], SubmissionPage] = field(default_factory=dict)
    fail_next: int = 0
    calls: List[Optional[str]] = field(default_factory=list)

    def list_submissions(self, owners: Sequence[str], after: Optional[str], limit: int) -> SubmissionPage:
        self.calls.append(after)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransientError("index_graphql", "unavailable")
        page = self.pages.get(after)
        if page is None:
            return SubmissionPage(edges=[], page_info=PageInfo(end_cursor=None, has_next_page=False))
        return page


@dataclass
class FakeReceiptClient:
    """Serves bulk uploads from memory, keyed by storage-network id."""

    txs: Dict[str, BulkTx] = field(default_factory=dict)
    calls: List[List[str]] = field(default_factory=list)

    def add_submission(self, tx_id: str, payload: Json, *, uploader: str = SUBMITTER) -> None:
        """Store a submission upload plus the timestamp-proof upload it names."""
        proof_id = str(payload["timestampProofs"]["response"]["id"])
        proof_doc = {"type": payload["type"], "dataAvailabilityId": payload["dataAvailabilityId"]}
        self.txs[tx_id] = BulkTx(id=tx_id, address=uploader, data=encode_b64_json(payload))
        self.txs[proof_id] = BulkTx(id=proof_id, address=uploader, data=encode_b64_json(proof_doc))

    def fetch_receipt_bulk(self, ids: Sequence[str]) -> BulkTxsResponse:
        self.calls.append(list(ids))
        return BulkTxsResponse(success=[self.txs[i] for i in ids if i in self.txs])


def make_page(
    submissions: Sequence[Any],
    *,
    cursors: Optional[Sequence[str]] = None,
    end_cursor: Optional[str] = None,
    has_next_page: bool = False,
    dropped: Optional[Sequence[DroppedSubmission]] = None,
) -> SubmissionPage:
    cs = list(cursors) if cursors is not None else [f"c-{s.id}" for s in submissions]
    return SubmissionPage(
        edges=[SubmissionEdge(cursor=c, submission=s) for c, s in zip(cs, submissions)],
        page_info=PageInfo(end_cursor=end_cursor, has_next_page=has_next_page),
        dropped=list(dropped or []),
    )


def make_config(data_dir: str, **overrides: Any):
    """Fast-cycling config for in-process node tests; never reads the process env."""
    from daproof.config import load_config

    raw: Json = {
        "node_url": "http://127.0.0.1:8545",
        "environment": ENVIRONMENT.value,
        "deployment": DEPLOYMENT.value,
        "data_dir": str(data_dir),
        "concurrency": 4,
        "page_size": 50,
        "poll_interval_ms": 20,
        "idle_sleep_ms": 10,
        "retry_max_attempts": 3,
        "retry_backoff_base_ms": 10,
        "retry_backoff_cap_ms": 50,
        "failed_write_retry_ms": 20,
        "error_backoff_min_ms": 5,
        "error_backoff_max_ms": 20,
        "extra_submitters": SUBMITTER,
    }
    raw.update(overrides)
    return load_config(overrides=raw, environ={})
