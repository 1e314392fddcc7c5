import pytest

import db
from firex_api import PollResult, PollStatus, RentResult
from orders import OrderEngine

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class ManualTimer:
    def __init__(self, due, interval, fn, name, seq):
        self.due = due
        self.interval = interval
        self.fn = fn
        self.name = name or ""
        self.seq = seq
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Fires timers in due order while advancing a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers = []
        self._seq = 0

    def _add(self, delay, interval, fn, name):
        t = ManualTimer(self.clock.now + delay, interval, fn, name, self._seq)
        self._seq += 1
        self.timers.append(t)
        return t

    def every(self, interval, fn, name=None):
        return self._add(interval, interval, fn, name)

    def after(self, delay, fn, name=None):
        return self._add(delay, None, fn, name)

    def advance(self, seconds: float):
        target = self.clock.now + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and t.due <= target]
            if not due:
                break
            t = min(due, key=lambda x: (x.due, x.seq))
            self.clock.now = t.due
            if t.interval is None:
                t.cancelled = True
            else:
                t.due += t.interval
            t.fn()
        self.clock.now = target
        self.timers = [t for t in self.timers if not t.cancelled]

    def advance_to(self, elapsed: float):
        self.advance(T0 + elapsed - self.clock.now)

    def live(self, name_part: str = ""):
        return [t for t in self.timers if not t.cancelled and name_part in t.name]

    def shutdown(self):
        for t in self.timers:
            t.cancel()


class StubVendor:
    def __init__(self):
        self.rent_results = []
        self.poll_results = []
        self.default_poll = PollResult(PollStatus.WAITING, raw="STATUS_WAIT_CODE")
        self.poll_fn = None
        self.cancel_result = True
        self.request_new_result = True
        self.rent_calls = []
        self.poll_calls = []
        self.cancel_calls = []
        self.request_new_calls = []
        self._n = 0

    def rent_number(self, service_code, country_code):
        self.rent_calls.append((service_code, country_code))
        if self.rent_results:
            return self.rent_results.pop(0)
        self._n += 1
        return RentResult(success=True, activation_id=f"ACT{self._n}", phone=f"91987654321{self._n % 10}")

    def poll(self, activation_id):
        self.poll_calls.append(activation_id)
        if self.poll_fn is not None:
            return self.poll_fn(activation_id)
        if self.poll_results:
            return self.poll_results.pop(0)
        return self.default_poll

    def cancel(self, activation_id):
        self.cancel_calls.append(activation_id)
        return self.cancel_result

    def request_new(self, activation_id):
        self.request_new_calls.append(activation_id)
        return self.request_new_result


class RecordingPresenter:
    def __init__(self):
        self.calls = []

    def names(self):
        return [c[0] for c in self.calls]

    def of(self, name):
        return [c[1:] for c in self.calls if c[0] == name]

    def render_purchase_progress(self, chat_id, service_name, quote):
        self.calls.append(("progress", chat_id, service_name, quote))
        return 100

    def render_purchase_failed(self, chat_id, message_id, err, refunded):
        self.calls.append(("failed", chat_id, message_id, err, refunded))
        return True

    def render_order_active(self, job, keyboard):
        self.calls.append(("active", job.order_id, keyboard.lock_remaining))
        return True

    def render_otp_delivered(self, job, code, remaining):
        self.calls.append(("otp", job.order_id, code, remaining))
        return True

    def render_extra_otp(self, job, code):
        self.calls.append(("extra_otp", job.order_id, code, job.otp_count))
        return True

    def render_terminal(self, job, outcome):
        self.calls.append(("terminal", job.order_id, outcome, job.otp_count))
        return True


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def order_placed(self, job, original_price=None, discount=0.0):
        self.events.append(("order_placed", job.order_id))

    def otp_received(self, job, code):
        self.events.append(("otp_received", job.order_id, code))

    def order_cancelled(self, job, reason):
        self.events.append(("order_cancelled", job.order_id, reason))

    def new_number_requested(self, job):
        self.events.append(("new_number_requested", job.order_id))

    def kinds(self):
        return [e[0] for e in self.events]


def delivered(code):
    return PollResult(PollStatus.DELIVERED, code=code, raw=f"STATUS_OK:{code}")


WAITING = PollResult(PollStatus.WAITING, raw="STATUS_WAIT_CODE")
CANCELLED = PollResult(PollStatus.CANCELLED, raw="STATUS_CANCEL")

USER_ID = 1001
OTHER_USER_ID = 2002


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "test.db"))
    db.init_db()
    db.register_user(USER_ID, first_name="Test")
    db.adjust_balance(USER_ID, 100)
    db.register_user(OTHER_USER_ID)
    return db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def vendor():
    return StubVendor()


@pytest.fixture
def presenter():
    return RecordingPresenter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, vendor, presenter, notifier, scheduler, clock):
    return OrderEngine(
        store=store,
        vendor=vendor,
        presenter=presenter,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
    )
