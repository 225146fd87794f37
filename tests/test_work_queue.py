from __future__ import annotations

import threading
import time

import pytest

from daproof.queue.work_queue import WorkQueue


def test_fifo_order() -> None:
    q: WorkQueue[int] = WorkQueue(name="t")
    for i in range(5):
        q.enqueue(i)
    assert [q.dequeue(timeout_s=0.1) for _ in range(5)] == [0, 1, 2, 3, 4]
    assert q.dequeue(timeout_s=0.01) is None


def test_delayed_item_not_ready_before_due() -> None:
    q: WorkQueue[str] = WorkQueue()
    q.enqueue_with_delay("later", 200)
    q.enqueue("now")

    assert q.dequeue(timeout_s=0.01) == "now"
    assert q.dequeue(timeout_s=0.01) is None
    assert q.size() == 1
    assert q.ready_size() == 0

    assert q.dequeue(timeout_s=2.0) == "later"


def test_zero_delay_is_plain_enqueue() -> None:
    q: WorkQueue[str] = WorkQueue()
    q.enqueue_with_delay("x", 0)
    assert q.ready_size() == 1


def test_join_waits_for_task_done() -> None:
    q: WorkQueue[int] = WorkQueue()
    q.enqueue(1)
    q.enqueue(2)
    assert q.join(timeout_s=0.01) is False

    def _consume() -> None:
        for _ in range(2):
            item = q.dequeue(timeout_s=1.0)
            assert item is not None
            time.sleep(0.01)
            q.task_done()

    t = threading.Thread(target=_consume)
    t.start()
    assert q.join(timeout_s=2.0) is True
    t.join()
    assert q.unfinished() == 0


def test_task_done_too_many_times() -> None:
    q: WorkQueue[int] = WorkQueue()
    with pytest.raises(ValueError):
        q.task_done()


def test_close_wakes_blocked_consumer() -> None:
    q: WorkQueue[int] = WorkQueue()
    out = []

    t = threading.Thread(target=lambda: out.append(q.dequeue()))
    t.start()
    time.sleep(0.05)
    q.close()
    t.join(timeout=2.0)

    assert not t.is_alive()
    assert out == [None]
    assert q.closed is True


def test_closed_queue_still_drains_ready_items() -> None:
    q: WorkQueue[int] = WorkQueue()
    q.enqueue(7)
    q.close()
    assert q.dequeue() == 7
    assert q.dequeue() is None
