# src/daproof/queue/router.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from daproof.errors import ValidatorError
from daproof.metrics import inc_counter, set_gauge
from daproof.models.result import Outcome, VerificationResult
from daproof.queue.retry import RetryQueue
from daproof.queue.work_queue import WorkQueue
from daproof.storage.failed_proofs import FailedProofRecord, FailedProofStore
from daproof.storage.sqlite_db import VerificationStore
from daproof.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("daproof.queue")

ResultCallback = Callable[[Any, VerificationResult], None]


def _dump_submission(submission: Any) -> Optional[Json]:
    dump = getattr(submission, "model_dump", None)
    if dump is None:
        return None
    return dump(by_alias=True, mode="json")


class ResultRouter:
    """Routes every verification result to its destination.

    VALID      -> results store
    INVALID    -> results store + failed-proof queue
    TRANSIENT  -> retry queue, or failed-proof queue (EXHAUSTED_RETRIES)

    `attempt` is the number of transient failures the submission already had
    before this result (0 for a first verification).
    """

    def __init__(
        self,
        *,
        store: VerificationStore,
        retry_queue: RetryQueue,
        failed_queue: WorkQueue[FailedProofRecord],
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        self._store = store
        self._retry = retry_queue
        self._failed = failed_queue
        self._on_result = on_result

    def route(self, submission: Any, result: VerificationResult, attempt: int = 0) -> str:
        sid = result.submission_id
        action = self._route(submission, result, int(attempt))
        if self._on_result is not None:
            try:
                self._on_result(submission, result)
            except Exception:
                inc_counter("result_callback_errors_total", 1)
                log.exception("result callback failed (id=%s)", sid)
        return action

    def _route(self, submission: Any, result: VerificationResult, attempt: int) -> str:
        sid = result.submission_id

        if result.outcome == Outcome.VALID:
            self._store.put_result(result)
            self._retry.discard(sid)
            return "valid"

        if result.outcome == Outcome.INVALID:
            self._store.put_result(result)
            self._retry.discard(sid)
            self.record_failure(
                FailedProofRecord(
                    submission_id=sid,
                    reason=result.reason or ValidatorError.INVALID_PAYLOAD,
                    detail=result.detail,
                    attempt=attempt,
                    submission=_dump_submission(submission),
                )
            )
            return "invalid"

        failures = attempt + 1
        if self._retry.policy.exhausted(failures):
            self._retry.discard(sid)
            inc_counter("retries_exhausted_total", 1)
            log_event(log, "retries_exhausted", level=logging.WARNING, id=sid, attempts=failures, detail=result.detail)
            self.record_failure(
                FailedProofRecord(
                    submission_id=sid,
                    reason=ValidatorError.EXHAUSTED_RETRIES,
                    detail=result.detail,
                    attempt=failures,
                    submission=_dump_submission(submission),
                )
            )
            return "exhausted"

        entry = self._retry.schedule(submission, failures)
        inc_counter("retries_scheduled_total", 1)
        log_event(
            log,
            "retry_scheduled",
            level=logging.DEBUG,
            id=sid,
            attempt=entry.attempt,
            next_eligible_ms=entry.next_eligible_ms,
        )
        return "retry"

    def record_failure(self, record: FailedProofRecord) -> None:
        self._failed.enqueue(record)
        set_gauge("failed_queue_depth", self._failed.size())


class FailedProofConsumer:
    """Single consumer writing failed-proof records.

    An I/O error re-enqueues the record after a delay. A record whose id cannot
    be stored is logged and counted as `failed_proof_rejected_total`.
    """

    def __init__(self, *, store: FailedProofStore, queue: WorkQueue[FailedProofRecord], retry_ms: int) -> None:
        self._store = store
        self._queue = queue
        self._retry_ms = int(retry_ms)

    def __call__(self, record: FailedProofRecord) -> None:
        try:
            written = self._store.write(record)
        except OSError as e:
            inc_counter("failed_proof_write_errors_total", 1)
            log_event(
                log,
                "failed_proof_write_error",
                level=logging.ERROR,
                id=record.submission_id,
                error=str(e),
                retry_ms=self._retry_ms,
            )
            self._queue.enqueue_with_delay(record, self._retry_ms)
            return
        except ValueError as e:
            # the id cannot name a file; retrying would fail the same way
            inc_counter("failed_proof_rejected_total", 1)
            log_event(
                log,
                "failed_proof_rejected",
                level=logging.ERROR,
                id=record.submission_id,
                reason=record.reason.value,
                error=str(e),
            )
            return
        if written:
            inc_counter("failed_proofs_written_total", 1)
            log_event(log, "failed_proof_written", id=record.submission_id, reason=record.reason.value)
        set_gauge("failed_queue_depth", self._queue.size())
