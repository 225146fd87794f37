# src/daproof/queue/worker_pool.py
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, Protocol, TypeVar

from daproof.metrics import inc_counter, set_gauge
from daproof.structured_logging import log_event

T = TypeVar("T")

log = logging.getLogger("daproof.queue")


class RunState(str, Enum):
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


class Dequeueable(Protocol[T]):
    def dequeue(self, timeout_s: Optional[float] = None) -> Optional[T]: ...

    def task_done(self) -> None: ...


class WorkerPool(Generic[T]):
    """Fixed-size pool of threads draining one queue.

    Each worker: dequeue (bounded wait when empty), run handler, task_done.
    A handler exception is logged and counted; the worker keeps going.
    stop() stops new dequeues and waits for in-flight handlers up to a timeout.
    """

    def __init__(
        self,
        *,
        name: str,
        queue: Dequeueable[T],
        handler: Callable[[T], Any],
        size: int,
        idle_sleep_ms: int = 200,
    ) -> None:
        if int(size) < 1:
            raise ValueError("pool size must be >= 1")
        self.name = str(name)
        self._queue = queue
        self._handler = handler
        self._size = int(size)
        self._idle_s = max(0.001, float(idle_sleep_ms) / 1000.0)

        self._state = RunState.STOPPED
        self._state_lock = threading.Lock()
        self._threads: List[threading.Thread] = []

        self._active = 0
        self._max_active = 0
        self._processed = 0

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    @property
    def size(self) -> int:
        return self._size

    def active(self) -> int:
        with self._state_lock:
            return self._active

    def max_active(self) -> int:
        """Highest number of concurrently running handlers seen so far."""
        with self._state_lock:
            return self._max_active

    def processed(self) -> int:
        with self._state_lock:
            return self._processed

    def start(self) -> None:
        with self._state_lock:
            if self._state != RunState.STOPPED:
                return
            self._state = RunState.RUNNING
            self._threads = [
                threading.Thread(target=self._run, name=f"daproof-{self.name}-{i}", daemon=True)
                for i in range(self._size)
            ]
        for t in self._threads:
            t.start()
        inc_counter(f"{self.name}_pool_start_total", 1)
        log_event(log, "pool_started", pool=self.name, size=self._size)

    def stop(self, timeout_s: float = 5.0) -> bool:
        """Returns True if every worker exited within the timeout."""
        with self._state_lock:
            if self._state == RunState.STOPPED:
                return True
            self._state = RunState.STOPPING
            threads = list(self._threads)

        deadline = time.monotonic() + max(0.0, float(timeout_s))
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        clean = not any(t.is_alive() for t in threads)

        with self._state_lock:
            self._state = RunState.STOPPED
            self._threads = []
        log_event(log, "pool_stopped", pool=self.name, clean=clean, processed=self.processed())
        return clean

    def _begin(self) -> None:
        with self._state_lock:
            self._active += 1
            if self._active > self._max_active:
                self._max_active = self._active
            n = self._active
        set_gauge(f"{self.name}_active", n)

    def _end(self) -> None:
        with self._state_lock:
            self._active -= 1
            self._processed += 1
            n = self._active
        set_gauge(f"{self.name}_active", n)

    def _run(self) -> None:
        while self.state == RunState.RUNNING:
            item = self._queue.dequeue(timeout_s=self._idle_s)
            if item is None:
                continue
            self._begin()
            try:
                self._handler(item)
            except Exception:
                inc_counter(f"{self.name}_handler_errors_total", 1)
                log.exception("worker handler failed (pool=%s)", self.name)
            finally:
                self._end()
                self._queue.task_done()
