# src/daproof/runtime/node.py
from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Callable, Dict, List, Optional

from daproof.clients.chain import ChainClient, JsonRpcChainClient
from daproof.clients.http import HttpPolicy
from daproof.clients.index import DroppedSubmission, GraphQLIndexClient, IndexClient, ReceiptClient, fetch_submission
from daproof.config import VerifierConfig
from daproof.errors import InvariantError, ValidatorError
from daproof.metrics import inc_counter, set_gauge
from daproof.models.result import VerificationResult
from daproof.proofs.engine import ProofVerificationEngine
from daproof.queue.retry import RetryPolicy, RetryQueue, RetryQueueEntry
from daproof.queue.router import FailedProofConsumer, ResultRouter
from daproof.queue.work_queue import WorkQueue
from daproof.queue.worker_pool import RunState, WorkerPool
from daproof.runtime.watcher import Watcher
from daproof.storage.failed_proofs import FailedProofRecord, FailedProofStore
from daproof.storage.sqlite_db import SqliteDB, VerificationStore
from daproof.structured_logging import log_event
from daproof.submitters import network_profile

Json = Dict[str, Any]

log = logging.getLogger("daproof.node")


class VerifierNode:
    """Wires the verifier together and supervises its loops.

      watcher -> verify queue -> verify pool -> router -> results store
                 retry queue  -> retry pool  -> router -> retry queue | failed queue
      failed queue -> failed-proof consumer (one thread)

    chain/index default to the JSON-RPC and GraphQL clients built from the
    config; tests pass in-process fakes.
    """

    def __init__(
        self,
        cfg: VerifierConfig,
        *,
        chain: Optional[ChainClient] = None,
        index: Optional[IndexClient] = None,
        receipts: Optional[ReceiptClient] = None,
        on_result: Optional[Callable[[Any, VerificationResult], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.profile = network_profile(cfg.environment, cfg.deployment, cfg.extra_submitter_list)

        policy = HttpPolicy(
            timeout_s=cfg.request_timeout_s,
            retries=cfg.request_retries,
            retry_delay_ms=cfg.request_retry_delay_ms,
        )
        self.chain: ChainClient = chain or JsonRpcChainClient(cfg.node_url, policy=policy)
        self.receipts = receipts or ReceiptClient(cfg.receipt_url, policy=policy)
        self.index: IndexClient = index or GraphQLIndexClient(cfg.index_url, self.receipts, policy=policy)

        self.store = VerificationStore(db=SqliteDB(path=cfg.db_path))
        self.failed_store = FailedProofStore(cfg.failed_proofs_dir)

        self.engine = ProofVerificationEngine(
            chain=self.chain,
            hub_contract=self.profile.hub_contract,
            submitters=self.profile.submitters,
            store=self.store,
        )

        self.verify_queue: WorkQueue[Any] = WorkQueue(name="verify")
        self.retry_queue = RetryQueue(
            RetryPolicy(
                max_attempts=cfg.retry_max_attempts,
                backoff_base_ms=cfg.retry_backoff_base_ms,
                backoff_cap_ms=cfg.retry_backoff_cap_ms,
            )
        )
        self.failed_queue: WorkQueue[FailedProofRecord] = WorkQueue(name="failed_proofs")

        self.router = ResultRouter(
            store=self.store,
            retry_queue=self.retry_queue,
            failed_queue=self.failed_queue,
            on_result=on_result,
        )

        self.verify_pool: WorkerPool[Any] = WorkerPool(
            name="verify",
            queue=self.verify_queue,
            handler=self._verify_new,
            size=cfg.concurrency,
            idle_sleep_ms=cfg.idle_sleep_ms,
        )
        self.retry_pool: WorkerPool[RetryQueueEntry] = WorkerPool(
            name="retry",
            queue=self.retry_queue,
            handler=self._verify_retry,
            size=cfg.concurrency,
            idle_sleep_ms=cfg.idle_sleep_ms,
        )
        self.failed_pool: WorkerPool[FailedProofRecord] = WorkerPool(
            name="failed_proofs",
            queue=self.failed_queue,
            handler=FailedProofConsumer(
                store=self.failed_store,
                queue=self.failed_queue,
                retry_ms=cfg.failed_write_retry_ms,
            ),
            size=1,
            idle_sleep_ms=cfg.idle_sleep_ms,
        )

        self.watcher = Watcher(
            index=self.index,
            owners=self.profile.submitters,
            dispatch=self.dispatch,
            store=self.store,
            on_dropped=self._on_dropped,
            page_size=cfg.page_size,
            poll_interval_ms=cfg.poll_interval_ms,
            resync=cfg.resync,
            backlog=self.verify_queue.size,
            backlog_limit=max(cfg.page_size, cfg.concurrency) * 2,
            error_backoff_min_ms=cfg.error_backoff_min_ms,
            error_backoff_max_ms=cfg.error_backoff_max_ms,
        )

        self._use_cache = not cfg.resync
        self._settle_lock = threading.Lock()
        self._settle_waiters: Dict[str, List[Callable[[], None]]] = {}
        self._state = RunState.STOPPED
        self._state_lock = threading.Lock()
        self._stopped = threading.Event()
        self._api = None

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def dispatch(self, submission: Any, settled: Optional[Callable[[], None]] = None) -> None:
        """Queue a submission. `settled` runs once it reached a terminal outcome."""
        if settled is not None:
            with self._settle_lock:
                self._settle_waiters.setdefault(str(submission.id), []).append(settled)
        self.verify_queue.enqueue(submission)
        set_gauge("verify_queue_depth", self.verify_queue.size())

    def _settle(self, submission_id: str) -> None:
        with self._settle_lock:
            waiters = self._settle_waiters.pop(submission_id, [])
        for cb in waiters:
            cb()

    def verify(self, submission: Any, attempt: int = 0) -> Optional[VerificationResult]:
        """Verify one submission and route its result. None if the payload is unusable."""
        sid = str(getattr(submission, "id", "") or "")
        try:
            result = self.engine.verify(submission, use_cache=self._use_cache)
        except InvariantError as e:
            inc_counter("verifications_invariant_total", 1)
            log_event(log, "invariant_failure", level=logging.ERROR, id=sid, code=e.code, reason=e.reason)
            self.retry_queue.discard(sid)
            self.router.record_failure(
                FailedProofRecord(
                    submission_id=sid,
                    reason=ValidatorError.INVALID_PAYLOAD,
                    detail=e.reason,
                    attempt=attempt,
                )
            )
            self._settle(sid)
            return None
        if self.router.route(submission, result, attempt) != "retry":
            self._settle(sid)
        return result

    def check_submission(self, tx_id: str) -> VerificationResult:
        """Fetch one submission by id and verify it once, outside the pipeline.

        Nothing is routed: the result is not stored and no retry is scheduled.
        LookupError when the storage node does not serve the id, InvariantError
        for a malformed payload, TransientError for I/O faults.
        """
        submission = fetch_submission(self.receipts, tx_id)
        result = self.engine.verify(submission, use_cache=self._use_cache)
        inc_counter("checks_on_demand_total", 1)
        log_event(
            log,
            "submission_checked",
            id=result.submission_id,
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason is not None else None,
        )
        return result

    def _verify_new(self, submission: Any) -> None:
        self.verify(submission, attempt=0)

    def _verify_retry(self, entry: RetryQueueEntry) -> None:
        inc_counter("retries_attempted_total", 1)
        self.verify(entry.submission, attempt=entry.attempt)

    def _on_dropped(self, dropped: DroppedSubmission) -> None:
        self.router.record_failure(
            FailedProofRecord(
                submission_id=dropped.id,
                reason=ValidatorError.INVALID_PAYLOAD,
                detail=dropped.reason,
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._state_lock:
            if self._state != RunState.STOPPED:
                return
            self._state = RunState.RUNNING
        self._stopped.clear()

        self.failed_pool.start()
        self.retry_pool.start()
        self.verify_pool.start()
        self.watcher.start()
        if int(self.cfg.api_port) > 0:
            self._start_api()

        log_event(
            log,
            "node_started",
            environment=self.cfg.environment.value,
            deployment=self.cfg.deployment.value,
            concurrency=self.cfg.concurrency,
            resync=self.cfg.resync,
            hub_contract=self.profile.hub_contract,
        )

    def stop(self, timeout_s: float = 10.0) -> None:
        with self._state_lock:
            if self._state != RunState.RUNNING:
                return
            self._state = RunState.STOPPING
        log_event(log, "node_stopping")

        self.watcher.stop(timeout_s=timeout_s)
        # Best-effort drain of handed-out work. Whatever is left stays behind
        # the committed cursor and is fetched again after a restart.
        drained = self.verify_queue.join(timeout_s=timeout_s)
        self.verify_pool.stop(timeout_s=timeout_s)
        self.retry_pool.stop(timeout_s=timeout_s)
        # Let pending failed-proof records reach disk before the consumer goes.
        self.failed_queue.join(timeout_s=timeout_s)
        self.failed_pool.stop(timeout_s=timeout_s)
        self._stop_api()

        for q in (self.verify_queue, self.retry_queue, self.failed_queue):
            q.close()

        with self._state_lock:
            self._state = RunState.STOPPED
        self._stopped.set()
        log_event(
            log,
            "node_stopped",
            drained=drained,
            pending=self.verify_queue.size(),
            retrying=self.retry_queue.size(),
            cursor=self.watcher.committed_cursor,
        )

    def wait(self, timeout_s: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout=timeout_s)

    def run_forever(self) -> None:
        """Start, block until SIGINT/SIGTERM, then stop."""
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, self._handle_signal)
        self.start()
        while not self._stopped.wait(timeout=1.0):
            pass

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        log_event(log, "signal_received", signal=int(signum))
        threading.Thread(target=self.stop, name="daproof-shutdown", daemon=True).start()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Json:
        return {
            "state": self.state.value,
            "environment": self.cfg.environment.value,
            "deployment": self.cfg.deployment.value,
            "cursor": self.watcher.cursor,
            "committed_cursor": self.watcher.committed_cursor,
            "resync": self.cfg.resync,
            "queues": {
                "verify": self.verify_queue.size(),
                "retry": self.retry_queue.size(),
                "failed_proofs": self.failed_queue.size(),
            },
            "active": {
                "verify": self.verify_pool.active(),
                "retry": self.retry_pool.active(),
            },
            "watcher": {
                "state": self.watcher.state.value,
                "pages": self.watcher.pages,
                "consecutive_failures": self.watcher.consecutive_failures,
                "last_error": self.watcher.last_error,
            },
            "results": self.store.count_results(),
        }

    def _start_api(self) -> None:
        import uvicorn

        from daproof.api.app import create_app

        config = uvicorn.Config(
            create_app(self),
            host=self.cfg.api_host,
            port=int(self.cfg.api_port),
            log_level="warning",
        )
        server = uvicorn.Server(config)
        t = threading.Thread(target=server.run, name="daproof-api", daemon=True)
        t.start()
        self._api = (server, t)
        log_event(log, "api_started", host=self.cfg.api_host, port=int(self.cfg.api_port))

    def _stop_api(self) -> None:
        if self._api is None:
            return
        server, t = self._api
        server.should_exit = True
        t.join(timeout=5.0)
        self._api = None
