# src/daproof/queue/work_queue.py
from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Deque, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class WorkQueue(Generic[T]):
    """Thread-safe FIFO with optional delayed entries.

    - enqueue() never blocks; safe from any thread
    - dequeue(timeout_s) blocks until an item is ready, the timeout passes,
      or close() is called
    - delayed items become ready in due-time order, then join the FIFO tail
    """

    def __init__(self, name: str = "queue") -> None:
        self.name = str(name)
        self._ready: Deque[T] = deque()
        self._delayed: List[Tuple[int, int, T]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False
        self._unfinished = 0

    def enqueue(self, item: T) -> None:
        with self._cond:
            self._ready.append(item)
            self._unfinished += 1
            self._cond.notify()

    def enqueue_with_delay(self, item: T, delay_ms: int) -> None:
        if int(delay_ms) <= 0:
            self.enqueue(item)
            return
        with self._cond:
            heapq.heappush(self._delayed, (_now_ms() + int(delay_ms), next(self._seq), item))
            self._unfinished += 1
            self._cond.notify()

    def _promote_due(self, now_ms: int) -> None:
        while self._delayed and self._delayed[0][0] <= now_ms:
            _, _, item = heapq.heappop(self._delayed)
            self._ready.append(item)

    def dequeue(self, timeout_s: Optional[float] = None) -> Optional[T]:
        """Next ready item, or None on timeout/close."""
        deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        with self._cond:
            while True:
                self._promote_due(_now_ms())
                if self._ready:
                    return self._ready.popleft()
                if self._closed:
                    return None

                wait_s: Optional[float] = None
                if self._delayed:
                    wait_s = max(0.0, (self._delayed[0][0] - _now_ms()) / 1000.0)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_s = remaining if wait_s is None else min(wait_s, remaining)
                self._cond.wait(timeout=wait_s)

    def task_done(self) -> None:
        with self._cond:
            if self._unfinished <= 0:
                raise ValueError("task_done() called too many times")
            self._unfinished -= 1
            self._cond.notify_all()

    def join(self, timeout_s: Optional[float] = None) -> bool:
        """Wait until every enqueued item was dequeued and marked done."""
        deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        with self._cond:
            while self._unfinished > 0:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def ready_size(self) -> int:
        with self._cond:
            self._promote_due(_now_ms())
            return len(self._ready)

    def size(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def unfinished(self) -> int:
        with self._cond:
            return self._unfinished
