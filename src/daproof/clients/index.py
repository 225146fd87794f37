"""
Storage-network index access.

  ReceiptClient.fetch_receipt_bulk(ids)         -> BulkTxsResponse
  fetch_submission(receipts, tx_id)             -> one parsed submission
  GraphQLIndexClient.list_submissions(owners,…) -> SubmissionPage

A page is built in three hops:
  1) GraphQL `transactions` query: ids + uploader address, cursor-paginated
  2) bulk fetch of the submission payloads
  3) bulk fetch of each payload's timestamp-proof payload

Malformed payloads are dropped from the page (reported in `dropped`). Any id
the bulk endpoint fails to serve makes the whole page transient so the cursor
is never advanced past unseen work.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from daproof.clients.http import HttpPolicy, post_json
from daproof.errors import InvariantError, TransientError
from daproof.metrics import inc_counter
from daproof.models.submission import parse_submission
from daproof.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("daproof.index")

BULK_CHUNK_SIZE = 1000

TRANSACTIONS_QUERY = """
query DataAvailabilityTransactions($owners: [String!], $limit: Int, $after: String) {
  transactions(owners: $owners, limit: $limit, after: $after, order: ASC, hasTags: true) {
    edges {
      node {
        id
        address
      }
      cursor
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
""".strip()


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BulkTx:
    id: str
    address: str
    data: str


@dataclass(frozen=True, slots=True)
class BulkTxsResponse:
    success: List[BulkTx] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PageInfo:
    end_cursor: Optional[str]
    has_next_page: bool


@dataclass(frozen=True, slots=True)
class SubmissionEdge:
    cursor: str
    submission: Any


@dataclass(frozen=True, slots=True)
class DroppedSubmission:
    id: str
    reason: str
    details: Any = None


@dataclass(frozen=True, slots=True)
class SubmissionPage:
    edges: List[SubmissionEdge]
    page_info: PageInfo
    dropped: List[DroppedSubmission] = field(default_factory=list)

    @property
    def next_cursor(self) -> Optional[str]:
        """endCursor, falling back to the last edge cursor."""
        if self.page_info.end_cursor:
            return self.page_info.end_cursor
        if self.edges:
            return self.edges[-1].cursor
        return None


@runtime_checkable
class IndexClient(Protocol):
    def list_submissions(self, owners: Sequence[str], after: Optional[str], limit: int) -> SubmissionPage: ...


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def decode_base64_json(data: str) -> Any:
    """Decode base64 or base64url encoded JSON."""
    s = str(data or "").strip().replace("+", "-").replace("/", "_")
    s = s + "=" * (-len(s) % 4)
    raw = base64.urlsafe_b64decode(s.encode("ascii"))
    return json.loads(raw.decode("utf-8"))


def _chunks(items: Sequence[str], n: int) -> List[List[str]]:
    return [list(items[i : i + n]) for i in range(0, len(items), n)]


def build_submission(doc: Json, payload_tx: BulkTx, proof_tx: BulkTx) -> Any:
    """Join a decoded submission document with its timestamp-proof upload.

    ValueError/TypeError for an undecodable proof payload, InvariantError for
    a document that does not validate.
    """
    proof_doc = decode_base64_json(proof_tx.data)
    if not isinstance(proof_doc, dict):
        raise ValueError("timestamp proof payload is not an object")
    return parse_submission(
        doc,
        submission_id=payload_tx.id,
        submitter=payload_tx.address,
        proof_upload={
            "type": str(proof_doc.get("type") or ""),
            "dataAvailabilityId": str(proof_doc.get("dataAvailabilityId") or ""),
            "uploader": proof_tx.address,
        },
    )


def _fetch_one(receipts: ReceiptClient, tx_id: str, *, what: str) -> BulkTx:
    res = receipts.fetch_receipt_bulk([tx_id])
    if tx_id in res.failed:
        raise LookupError(f"{what} {tx_id!r} not served: {res.failed[tx_id]}")
    for tx in res.success:
        if tx.id == tx_id:
            return tx
    raise LookupError(f"{what} {tx_id!r} not found")


def fetch_submission(receipts: ReceiptClient, tx_id: str) -> Any:
    """Fetch and parse one submission by its storage-network id.

    LookupError if either upload is missing, InvariantError if the payload is
    malformed. TransientError from the bulk endpoint propagates.
    """
    sid = str(tx_id or "").strip()
    if not sid:
        raise LookupError("empty submission id")
    payload_tx = _fetch_one(receipts, sid, what="submission")
    try:
        doc = decode_base64_json(payload_tx.data)
        proof_id = str(doc["timestampProofs"]["response"]["id"])
    except (ValueError, KeyError, TypeError) as e:
        raise InvariantError("INVALID_PAYLOAD", "undecodable_payload", {"id": sid, "error": str(e)}) from e
    proof_tx = _fetch_one(receipts, proof_id, what="timestamp proof")
    try:
        return build_submission(doc, payload_tx, proof_tx)
    except (ValueError, TypeError) as e:
        raise InvariantError("INVALID_PAYLOAD", "undecodable_timestamp_proof", {"id": sid, "error": str(e)}) from e


# ---------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------


class ReceiptClient:
    """Bulk payload fetch from the storage node (`POST bulk/txs/data`)."""

    def __init__(self, base_url: str, *, policy: Optional[HttpPolicy] = None) -> None:
        self.base_url = str(base_url).rstrip("/") + "/"
        self.policy = policy or HttpPolicy()

    def fetch_receipt_bulk(self, ids: Sequence[str]) -> BulkTxsResponse:
        success: List[BulkTx] = []
        failed: Dict[str, str] = {}
        for chunk in _chunks([str(i) for i in ids], BULK_CHUNK_SIZE):
            resp = post_json(f"{self.base_url}bulk/txs/data", chunk, policy=self.policy, where="bulk_txs")
            if not isinstance(resp, dict):
                raise TransientError("bulk_txs", "non_object_response")
            for item in resp.get("success") or []:
                if not isinstance(item, dict):
                    continue
                success.append(
                    BulkTx(
                        id=str(item.get("id") or ""),
                        address=str(item.get("address") or "").lower(),
                        data=str(item.get("data") or ""),
                    )
                )
            for k, v in (resp.get("failed") or {}).items():
                failed[str(k)] = str(v)
        return BulkTxsResponse(success=success, failed=failed)


class GraphQLIndexClient:
    def __init__(
        self,
        index_url: str,
        receipts: ReceiptClient,
        *,
        policy: Optional[HttpPolicy] = None,
    ) -> None:
        self.index_url = str(index_url)
        self.receipts = receipts
        self.policy = policy or HttpPolicy()

    def _query_transactions(self, owners: Sequence[str], after: Optional[str], limit: int) -> Json:
        body = {
            "query": TRANSACTIONS_QUERY,
            "variables": {"owners": list(owners), "limit": int(limit), "after": after},
        }
        resp = post_json(self.index_url, body, policy=self.policy, where="index_graphql")
        data = resp.get("data") if isinstance(resp, dict) else None
        txs = data.get("transactions") if isinstance(data, dict) else None
        if not isinstance(txs, dict):
            errors = resp.get("errors") if isinstance(resp, dict) else None
            raise TransientError("index_graphql", f"no_data:{errors!r}")
        return txs

    def _bulk(self, ids: List[str], *, what: str) -> Dict[str, BulkTx]:
        if not ids:
            return {}
        res = self.receipts.fetch_receipt_bulk(ids)
        if res.failed:
            inc_counter("index_bulk_failed_total", len(res.failed))
            raise TransientError(f"bulk_{what}", f"failed_ids:{sorted(res.failed.keys())[:10]}")
        by_id = {tx.id: tx for tx in res.success}
        missing = [i for i in ids if i not in by_id]
        if missing:
            raise TransientError(f"bulk_{what}", f"missing_ids:{missing[:10]}")
        return by_id

    def list_submissions(self, owners: Sequence[str], after: Optional[str], limit: int) -> SubmissionPage:
        txs = self._query_transactions(owners, after, limit)

        raw_edges = [e for e in (txs.get("edges") or []) if isinstance(e, dict)]
        pi = txs.get("pageInfo") or {}
        page_info = PageInfo(end_cursor=pi.get("endCursor"), has_next_page=bool(pi.get("hasNextPage")))

        ids = [str((e.get("node") or {}).get("id") or "") for e in raw_edges]
        payload_txs = self._bulk([i for i in ids if i], what="submissions")

        dropped: List[DroppedSubmission] = []
        payloads: Dict[str, Json] = {}
        proof_ids: Dict[str, str] = {}
        for sid in ids:
            if not sid:
                continue
            try:
                doc = decode_base64_json(payload_txs[sid].data)
                proof_id = str(doc["timestampProofs"]["response"]["id"])
            except (ValueError, KeyError, TypeError) as e:
                dropped.append(DroppedSubmission(id=sid, reason="undecodable_payload", details=str(e)))
                continue
            payloads[sid] = doc
            proof_ids[sid] = proof_id

        proof_txs = self._bulk(sorted(set(proof_ids.values())), what="timestamp_proofs")

        edges: List[SubmissionEdge] = []
        for e, sid in zip(raw_edges, ids):
            if sid not in payloads:
                continue
            ptx = proof_txs[proof_ids[sid]]
            try:
                sub = build_submission(payloads[sid], payload_txs[sid], ptx)
            except (ValueError, TypeError) as err:
                dropped.append(DroppedSubmission(id=sid, reason="undecodable_timestamp_proof", details=str(err)))
                continue
            except InvariantError as err:
                dropped.append(DroppedSubmission(id=sid, reason=err.reason, details=err.details))
                continue
            edges.append(SubmissionEdge(cursor=str(e.get("cursor") or ""), submission=sub))

        for d in dropped:
            inc_counter("index_dropped_payloads_total", 1)
            log_event(log, "payload_dropped", level=logging.WARNING, id=d.id, reason=d.reason)

        log_event(
            log,
            "page_fetched",
            level=logging.DEBUG,
            after=after,
            edges=len(edges),
            dropped=len(dropped),
            has_next_page=page_info.has_next_page,
        )
        return SubmissionPage(edges=edges, page_info=page_info, dropped=dropped)
