# src/daproof/runtime/watcher.py
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Sequence

from daproof.clients.index import DroppedSubmission, IndexClient
from daproof.metrics import inc_counter, set_gauge
from daproof.queue.worker_pool import RunState
from daproof.storage.sqlite_db import VerificationStore
from daproof.structured_logging import log_event

log = logging.getLogger("daproof.watcher")

Settled = Callable[[], None]


class _PageTicket:
    __slots__ = ("cursor", "pending")

    def __init__(self, cursor: Optional[str], pending: int) -> None:
        self.cursor = cursor
        self.pending = int(pending)


class Watcher:
    """Polls the index for new submissions and dispatches them for verification.

    Two cursors are kept. The fetch cursor moves as soon as a page was handed
    out. The committed cursor (the one persisted) moves only when every edge
    of that page and of all earlier pages reported a terminal outcome through
    the `settled` callback passed to `dispatch(submission, settled)`. A restart
    resumes from the committed cursor, so nothing handed out but unfinished is
    skipped.

    A page without a next page means "caught up": the loop sleeps
    `poll_interval_ms` and polls again. When `backlog()` reports at least
    `backlog_limit` pending items the loop waits instead of fetching more pages.
    """

    def __init__(
        self,
        *,
        index: IndexClient,
        owners: Sequence[str],
        dispatch: Callable[[Any, Settled], None],
        store: Optional[VerificationStore] = None,
        on_dropped: Optional[Callable[[DroppedSubmission], None]] = None,
        page_size: int = 1000,
        poll_interval_ms: int = 5000,
        resync: bool = False,
        backlog: Optional[Callable[[], int]] = None,
        backlog_limit: int = 0,
        error_backoff_min_ms: int = 250,
        error_backoff_max_ms: int = 10_000,
    ) -> None:
        self._index = index
        self._owners: List[str] = [str(o).lower() for o in owners]
        self._dispatch = dispatch
        self._store = store
        self._on_dropped = on_dropped
        self._page_size = max(1, int(page_size))
        self._poll_interval_s = max(0.0, float(poll_interval_ms) / 1000.0)
        self._backlog = backlog
        self._backlog_limit = int(backlog_limit)
        self._error_backoff_min_ms = max(1, int(error_backoff_min_ms))
        self._error_backoff_max_ms = max(self._error_backoff_min_ms, int(error_backoff_max_ms))

        self.resync = bool(resync)
        self._cursor: Optional[str] = None
        if not self.resync and store is not None:
            self._cursor = store.get_cursor()
        self._committed: Optional[str] = self._cursor
        self._tickets: Deque[_PageTicket] = deque()
        self._tickets_lock = threading.Lock()

        self._state = RunState.STOPPED
        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None

        self._consecutive_failures = 0
        self.last_error: str = ""
        self.pages = 0
        self.dispatched = 0

    @property
    def cursor(self) -> Optional[str]:
        """Fetch position: the `after` cursor of the next page request."""
        return self._cursor

    @property
    def committed_cursor(self) -> Optional[str]:
        with self._tickets_lock:
            return self._committed

    def unsettled_pages(self) -> int:
        with self._tickets_lock:
            return len(self._tickets)

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def poll_once(self) -> bool:
        """Fetch and dispatch one page. Returns True if more pages are waiting.

        TransientError from the index propagates; the cursor is left as it was.
        A dispatch error abandons the page: it is fetched again on the next poll.
        """
        page = self._index.list_submissions(self._owners, self._cursor, self._page_size)

        new_cursor = page.next_cursor
        ticket = _PageTicket(new_cursor if new_cursor != self._cursor else None, len(page.edges))
        with self._tickets_lock:
            self._tickets.append(ticket)

        try:
            for edge in page.edges:
                self._dispatch(edge.submission, lambda t=ticket: self._settle(t))
                self.dispatched += 1
        except Exception:
            with self._tickets_lock:
                if ticket in self._tickets:
                    self._tickets.remove(ticket)
            raise
        if self._on_dropped is not None:
            for d in page.dropped:
                self._on_dropped(d)

        if new_cursor and new_cursor != self._cursor:
            self._cursor = new_cursor
        self._commit_settled()

        self.pages += 1
        inc_counter("watcher_pages_total", 1)
        inc_counter("watcher_dispatched_total", len(page.edges))
        log_event(
            log,
            "page_dispatched",
            edges=len(page.edges),
            dropped=len(page.dropped),
            cursor=self._cursor,
            has_next_page=page.page_info.has_next_page,
        )
        return bool(page.page_info.has_next_page)

    def _settle(self, ticket: _PageTicket) -> None:
        with self._tickets_lock:
            ticket.pending -= 1
        self._commit_settled()

    def _commit_settled(self) -> None:
        # pages commit in fetch order; a slow page holds back later ones
        with self._tickets_lock:
            moved = False
            while self._tickets and self._tickets[0].pending <= 0:
                done = self._tickets.popleft()
                if done.cursor:
                    self._committed = done.cursor
                    moved = True
            if moved and self._store is not None:
                self._store.set_cursor(self._committed)
            committed = self._committed
        if moved:
            log_event(log, "cursor_committed", level=logging.DEBUG, cursor=committed)

    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._state == RunState.RUNNING:
            return
        self._stop.clear()
        self._state = RunState.RUNNING
        self._t = threading.Thread(target=self._run, name="daproof-watcher", daemon=True)
        self._t.start()
        log_event(log, "watcher_started", cursor=self._cursor, resync=self.resync, owners=self._owners)

    def stop(self, timeout_s: float = 5.0) -> None:
        if self._state == RunState.STOPPED:
            return
        self._state = RunState.STOPPING
        self._stop.set()
        t = self._t
        if t is not None:
            t.join(timeout=max(0.0, float(timeout_s)))
        self._state = RunState.STOPPED
        log_event(log, "watcher_stopped", cursor=self._cursor, committed=self.committed_cursor, pages=self.pages, dispatched=self.dispatched)

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self._consecutive_failures += 1
        self.last_error = f"{where}:{type(err).__name__}:{err}"
        inc_counter("watcher_errors_total", 1)
        set_gauge("watcher_consecutive_failures", self._consecutive_failures)
        log.exception("watcher error (%s) failures=%s", where, self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self.last_error:
            return
        self._consecutive_failures = 0
        self.last_error = ""
        set_gauge("watcher_consecutive_failures", 0)

    def backoff_ms(self) -> int:
        n = max(1, int(self._consecutive_failures))
        return int(min(self._error_backoff_max_ms, self._error_backoff_min_ms * (2 ** min(10, n - 1))))

    def _saturated(self) -> bool:
        if self._backlog is None or self._backlog_limit <= 0:
            return False
        return int(self._backlog()) >= self._backlog_limit

    def _run(self) -> None:
        while not self._stop.is_set():
            if self._saturated():
                self._stop.wait(0.05)
                continue

            try:
                has_next = self.poll_once()
                self._clear_error()
            except Exception as err:
                self._mark_error(where="poll", err=err)
                self._stop.wait(self.backoff_ms() / 1000.0)
                continue

            if not has_next:
                # caught up; the index is a live stream
                self._stop.wait(self._poll_interval_s)
