import threading
import time

from pcr.workqueue import WorkQueue


def test_add_deduplicates():
    q = WorkQueue()
    q.add("ns/a")
    q.add("ns/a")
    q.add("ns/b")
    assert len(q) == 2
    assert q.get(timeout=0) == "ns/a"
    assert q.get(timeout=0) == "ns/b"
    assert q.get(timeout=0) is None


def test_key_in_flight_is_not_handed_out_twice():
    q = WorkQueue()
    q.add("ns/a")
    key = q.get(timeout=0)
    assert q.processing(key)

    q.add("ns/a")
    assert len(q) == 0
    assert q.get(timeout=0) is None

    q.done(key)
    assert q.get(timeout=0) == "ns/a"


def test_done_without_new_add_does_not_requeue():
    q = WorkQueue()
    q.add("ns/a")
    q.done(q.get(timeout=0))
    assert len(q) == 0


def test_add_after_delays():
    q = WorkQueue()
    q.add_after("ns/a", 0.05)
    assert q.get(timeout=0) is None
    assert q.get(timeout=2.0) == "ns/a"


def test_add_after_zero_is_immediate():
    q = WorkQueue()
    q.add_after("ns/a", 0)
    assert q.get(timeout=0) == "ns/a"


def test_rate_limited_backoff_grows_and_caps():
    q = WorkQueue(backoff_base_s=100.0, backoff_max_s=350.0)
    delays = [q.add_rate_limited("ns/a") for _ in range(4)]
    assert delays == [100.0, 200.0, 350.0, 350.0]
    assert q.num_requeues("ns/a") == 4

    q.forget("ns/a")
    assert q.num_requeues("ns/a") == 0
    assert q.backoff("ns/a") == 100.0
    q.shutdown()


def test_shutdown_wakes_waiters_and_drops_adds():
    q = WorkQueue()
    got = []

    def worker():
        got.append(q.get())

    t = threading.Thread(target=worker)
    t.start()
    time.sleep(0.05)
    q.shutdown()
    t.join(timeout=2.0)

    assert not t.is_alive()
    assert got == [None]
    q.add("ns/a")
    assert len(q) == 0
    assert q.shutting_down
