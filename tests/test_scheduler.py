"""Real-thread checks for the timer backend. Intervals are kept tiny."""
import threading
import time

from scheduler import Scheduler

WAIT = 2.0


def test_every_repeats_until_cancelled():
    sched = Scheduler()
    ticks = []
    enough = threading.Event()

    def tick():
        ticks.append(time.monotonic())
        if len(ticks) >= 3:
            enough.set()

    handle = sched.every(0.01, tick, name="t")
    assert enough.wait(WAIT)
    handle.cancel()
    time.sleep(0.05)
    count = len(ticks)
    time.sleep(0.05)
    assert len(ticks) == count
    assert handle.cancelled
    sched.shutdown()


def test_task_can_cancel_itself():
    sched = Scheduler()
    calls = []
    holder = {}
    done = threading.Event()

    def tick():
        calls.append(1)
        holder["h"].cancel()
        done.set()

    holder["h"] = sched.every(0.05, tick)
    assert done.wait(WAIT)
    time.sleep(0.05)
    assert calls == [1]
    sched.shutdown()


def test_tick_errors_do_not_stop_the_loop():
    sched = Scheduler()
    calls = []
    done = threading.Event()

    def tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        done.set()

    sched.every(0.01, tick)
    assert done.wait(WAIT)
    sched.shutdown()


def test_after_fires_once():
    sched = Scheduler()
    fired = threading.Event()
    calls = []

    def fire():
        calls.append(1)
        fired.set()

    handle = sched.after(0.01, fire)
    assert fired.wait(WAIT)
    time.sleep(0.05)
    assert calls == [1]
    assert handle.cancelled
    sched.shutdown()


def test_cancelled_after_never_fires():
    sched = Scheduler()
    calls = []
    handle = sched.after(0.05, lambda: calls.append(1))
    handle.cancel()
    time.sleep(0.15)
    assert calls == []
    sched.shutdown()


def test_shutdown_cancels_pending_and_refuses_new():
    sched = Scheduler()
    calls = []
    a = sched.every(0.5, lambda: calls.append("a"))
    b = sched.after(0.5, lambda: calls.append("b"))
    assert sched.pending() == 2

    sched.shutdown()
    assert a.cancelled and b.cancelled
    assert sched.pending() == 0

    late = sched.after(0.01, lambda: calls.append("late"))
    assert late.cancelled
    time.sleep(0.1)
    assert calls == []
