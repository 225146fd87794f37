# src/daproof/queue/retry.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Set

from daproof.metrics import set_gauge
from daproof.queue.work_queue import WorkQueue


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 60_000

    def compute_backoff_ms(self, attempt: int) -> int:
        # attempt starts at 1 for the first transient failure
        a = max(1, int(attempt))
        base = max(1, int(self.backoff_base_ms))
        cap = max(base, int(self.backoff_cap_ms))
        return int(min(cap, base * (2 ** min(30, a - 1))))

    def exhausted(self, attempt: int) -> bool:
        return int(attempt) >= int(self.max_attempts)


@dataclass(frozen=True)
class RetryQueueEntry:
    submission_id: str
    attempt: int
    next_eligible_ms: int
    submission: Any = None


class RetryQueue:
    """Pending-retry queue of TRANSIENT_FAILURE submissions.

    At most one entry per submission id. An entry stays registered while it
    waits and while a worker holds it; it is removed by discard() on a
    terminal outcome or exhaustion, and replaced by schedule() on a renewed
    transient failure.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, *, name: str = "retry") -> None:
        self.policy = policy or RetryPolicy()
        self.name = str(name)
        self._queue: WorkQueue[str] = WorkQueue(name=self.name)
        self._lock = threading.Lock()
        self._entries: Dict[str, RetryQueueEntry] = {}
        self._waiting: Set[str] = set()

    def _publish_depth(self) -> None:
        set_gauge(f"{self.name}_queue_depth", len(self._entries))

    def schedule(self, submission: Any, attempt: int) -> RetryQueueEntry:
        """Register (or advance) the retry entry for `submission`.

        The attempt count never goes backwards: a rediscovered submission
        (resync, duplicate edge) keeps the higher count of the old and new
        entry. If an entry for the same id is already waiting, only its count
        is raised.
        """
        sid = str(submission.id)
        with self._lock:
            cur = self._entries.get(sid)
            if cur is not None and sid in self._waiting:
                if int(attempt) > cur.attempt:
                    cur = replace(cur, attempt=int(attempt))
                    self._entries[sid] = cur
                return cur
            merged = max(int(attempt), cur.attempt if cur is not None else 0)
            delay_ms = self.policy.compute_backoff_ms(merged)
            entry = RetryQueueEntry(
                submission_id=sid,
                attempt=merged,
                next_eligible_ms=_now_ms() + delay_ms,
                submission=submission,
            )
            self._entries[sid] = entry
            self._waiting.add(sid)
            self._publish_depth()
        self._queue.enqueue_with_delay(sid, delay_ms)
        return entry

    def discard(self, submission_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(str(submission_id), None) is not None
            self._waiting.discard(str(submission_id))
            self._publish_depth()
        return removed

    def dequeue(self, timeout_s: Optional[float] = None) -> Optional[RetryQueueEntry]:
        """Next eligible entry, or None on timeout. Call task_done() after handling it."""
        deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            sid = self._queue.dequeue(remaining)
            if sid is None:
                return None
            with self._lock:
                entry = self._entries.get(sid) if sid in self._waiting else None
                self._waiting.discard(sid)
            if entry is not None:
                return entry
            # discarded while waiting, or a stale duplicate
            self._queue.task_done()
            if deadline is not None and time.monotonic() >= deadline:
                return None

    def task_done(self) -> None:
        self._queue.task_done()

    def join(self, timeout_s: Optional[float] = None) -> bool:
        return self._queue.join(timeout_s)

    def close(self) -> None:
        self._queue.close()

    def get(self, submission_id: str) -> Optional[RetryQueueEntry]:
        with self._lock:
            return self._entries.get(str(submission_id))

    def __contains__(self, submission_id: object) -> bool:
        with self._lock:
            return str(submission_id) in self._entries

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> List[RetryQueueEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: (e.next_eligible_ms, e.submission_id))
