import sqlite3

import pytest

import db
import orders
from firex_api import PollResult, PollStatus, RentError, RentResult
from orders import (
    InsufficientBalance,
    OrderEngine,
    PreconditionFailed,
    StoreFailure,
    VendorFailure,
)
from state import Outcome, Phase, TIMER_CANCEL_LOCK, TIMER_HARD_EXPIRY, TIMER_OTP_WINDOW

from conftest import (
    CANCELLED,
    OTHER_USER_ID,
    T0,
    USER_ID,
    WAITING,
    RecordingPresenter,
    delivered,
)


def _buy(engine):
    return engine.purchase(USER_ID, "WHATSAPP", 0)


def _terminals(presenter):
    return presenter.of("terminal")


# -------- purchase --------

def test_purchase_debits_and_registers_job(engine, store, vendor, presenter, notifier, scheduler):
    job = _buy(engine)

    assert store.get_balance(USER_ID) == 80
    assert job.order_id in engine.registry
    assert job.phone == "9876543211"
    assert job.activation_id == "ACT1"
    assert job.price == 20
    assert job.message_id == 100
    assert job.phase(T0, engine.cancel_lock) == Phase.ACTIVE_LOCKED
    assert vendor.rent_calls == [("wa", "22")]

    row = store.get_order(job.order_id)
    assert row["status"] == db.ORDER_ACTIVE
    assert row["phone"] == "9876543211"

    active = store.get_active_orders(USER_ID)
    assert len(active) == 1
    assert active[0]["expires_at"] == int(T0 + 900)

    assert presenter.names()[:2] == ["progress", "active"]
    assert notifier.kinds() == ["order_placed"]
    assert len(scheduler.live(job.order_id)) == 3


def test_purchase_unknown_server_is_rejected_before_debit(engine, store, vendor):
    with pytest.raises(PreconditionFailed) as exc:
        engine.purchase(USER_ID, "WHATSAPP", 7)
    assert exc.value.reason == orders.SERVICE_UNAVAILABLE
    assert store.get_balance(USER_ID) == 100
    assert vendor.rent_calls == []


def test_purchase_without_access_is_rejected(store, vendor, presenter, notifier, scheduler, clock):
    engine = OrderEngine(store, vendor, presenter, notifier, scheduler, clock=clock,
                         access_check=lambda uid: False)
    with pytest.raises(PreconditionFailed) as exc:
        _buy(engine)
    assert exc.value.reason == orders.ACCESS_DENIED
    assert store.get_balance(USER_ID) == 100
    assert presenter.calls == []


def test_purchase_with_insufficient_balance(engine, store, vendor, presenter):
    with pytest.raises(InsufficientBalance) as exc:
        engine.purchase(OTHER_USER_ID, "WHATSAPP", 0)
    assert exc.value.required == 20
    assert exc.value.balance == 0
    assert vendor.rent_calls == []
    assert presenter.calls == []


def test_vendor_rejection_refunds_debit(engine, store, vendor, presenter, notifier):
    vendor.rent_results.append(RentResult(success=False, error=RentError.NO_NUMBERS, raw="NO_NUMBERS"))

    with pytest.raises(VendorFailure) as exc:
        _buy(engine)

    assert exc.value.error_kind == RentError.NO_NUMBERS
    assert store.get_balance(USER_ID) == 100
    assert len(engine.registry) == 0
    assert store.get_user_orders(USER_ID) == []
    failed = presenter.of("failed")
    assert len(failed) == 1
    assert failed[0][2] is exc.value
    assert failed[0][3] == 20
    assert notifier.events == []


def test_bad_vendor_number_is_cancelled_and_refunded(engine, store, vendor):
    vendor.rent_results.append(RentResult(success=True, activation_id="X1", phone="12345"))

    with pytest.raises(VendorFailure) as exc:
        _buy(engine)

    assert exc.value.error_kind == RentError.BAD_NUMBER
    assert vendor.cancel_calls == ["X1"]
    assert store.get_balance(USER_ID) == 100


def test_store_failure_after_rent_compensates(engine, store, vendor, monkeypatch):
    def boom(order):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "add_order", boom)

    with pytest.raises(StoreFailure):
        _buy(engine)

    assert store.get_balance(USER_ID) == 100
    assert vendor.cancel_calls == ["ACT1"]
    assert len(engine.registry) == 0
    assert store.get_active_orders(USER_ID) == []


def test_render_failures_never_touch_the_ledger(store, vendor, notifier, scheduler, clock):
    class BrokenPresenter(RecordingPresenter):
        def __getattribute__(self, name):
            if name.startswith("render_"):
                def fail(*args):
                    raise RuntimeError("telegram down")
                return fail
            return super().__getattribute__(name)

    engine = OrderEngine(store, vendor, BrokenPresenter(), notifier, scheduler, clock=clock)
    job = _buy(engine)
    assert job.message_id is None

    scheduler.advance(130)
    engine.cancel(job.order_id, USER_ID)
    assert store.get_balance(USER_ID) == 100


# -------- Timer A --------

def test_cancel_lock_countdown_stops_at_two_minutes(engine, presenter, scheduler):
    job = _buy(engine)
    scheduler.advance(130)

    locks = [c[1] for c in presenter.of("active")]
    assert locks[0] == 120
    assert locks[-1] == 0
    assert locks == sorted(locks, reverse=True)
    assert TIMER_CANCEL_LOCK not in job.timers
    assert scheduler.live(f"{job.order_id}:{TIMER_CANCEL_LOCK}") == []


# -------- Scenario A: OTP delivery --------

def test_otp_delivery_settles_the_order(engine, store, vendor, presenter, notifier, scheduler):
    vendor.poll_results = [WAITING, WAITING, WAITING, delivered("1234")]
    vendor.default_poll = delivered("1234")
    job = _buy(engine)

    scheduler.advance(20)

    assert job.otp_received
    assert job.last_otp == "1234"
    assert job.otp_count == 1
    assert job.phase(T0 + 20, engine.cancel_lock) == Phase.OTP_DELIVERED
    assert TIMER_CANCEL_LOCK not in job.timers
    assert TIMER_OTP_WINDOW in job.timers

    row = store.get_order(job.order_id)
    assert row["otp_code"] == "1234"
    assert row["status"] == db.ORDER_COMPLETED

    # same code keeps coming back
    scheduler.advance(60)
    assert job.otp_count == 1
    assert notifier.kinds().count("otp_received") == 1
    assert presenter.of("extra_otp") == []
    assert store.get_balance(USER_ID) == 80


def test_check_now_and_poll_deliver_once(engine, store, vendor, notifier, scheduler, monkeypatch):
    marks = []
    real_mark = db.mark_order_otp

    def counting_mark(order_id, code):
        marks.append(code)
        return real_mark(order_id, code)

    monkeypatch.setattr(db, "mark_order_otp", counting_mark)
    job = _buy(engine)
    vendor.default_poll = delivered("5555")

    result = engine.check_now(job.order_id, USER_ID)
    assert result.status == PollStatus.DELIVERED
    engine.check_now(job.order_id, USER_ID)
    scheduler.advance(5)

    assert marks == ["5555"]
    assert job.otp_count == 1
    assert notifier.kinds().count("otp_received") == 1


def test_check_now_unknown_order(engine):
    with pytest.raises(PreconditionFailed) as exc:
        engine.check_now("ORDNOPE")
    assert exc.value.reason == orders.NOT_FOUND


def test_poll_errors_are_ignored(engine, vendor, scheduler, store):
    vendor.default_poll = PollResult(PollStatus.ERROR, raw="timeout")
    job = _buy(engine)
    scheduler.advance(60)
    assert job.order_id in engine.registry
    assert not job.otp_received
    assert store.get_balance(USER_ID) == 80


# -------- Scenario B: user cancel --------

def test_cancel_during_lock_is_rejected(engine, store, vendor, scheduler):
    job = _buy(engine)
    scheduler.advance(60)

    with pytest.raises(PreconditionFailed) as exc:
        engine.cancel(job.order_id, USER_ID)

    assert exc.value.reason == orders.CANCEL_LOCKED
    assert exc.value.remaining == 60
    assert store.get_balance(USER_ID) == 80
    assert job.order_id in engine.registry
    assert vendor.cancel_calls == []


def test_cancel_after_lock_refunds(engine, store, vendor, presenter, notifier, scheduler):
    job = _buy(engine)
    scheduler.advance(130)

    engine.cancel(job.order_id, USER_ID)

    assert store.get_balance(USER_ID) == 100
    assert job.order_id not in engine.registry
    assert job.closed
    assert store.get_order(job.order_id)["status"] == db.ORDER_CANCELLED
    assert store.get_active_orders(USER_ID) == []
    assert vendor.cancel_calls == ["ACT1"]
    assert "order_cancelled" in notifier.kinds()
    assert scheduler.live(job.order_id) == []

    terminals = _terminals(presenter)
    assert [t[1] for t in terminals] == [Outcome.CANCELLED_REFUNDED]

    # nothing fires after the job is gone
    scheduler.advance(1000)
    assert store.get_balance(USER_ID) == 100
    assert len(_terminals(presenter)) == 1


def test_cancel_refunds_even_if_vendor_does_not_confirm(engine, store, vendor, scheduler):
    vendor.cancel_result = False
    job = _buy(engine)
    scheduler.advance(125)
    engine.cancel(job.order_id, USER_ID)
    assert store.get_balance(USER_ID) == 100


def test_cancel_after_otp_is_rejected(engine, store, vendor, scheduler):
    job = _buy(engine)
    vendor.default_poll = delivered("9999")
    scheduler.advance(130)

    with pytest.raises(PreconditionFailed) as exc:
        engine.cancel(job.order_id, USER_ID)
    assert exc.value.reason == orders.OTP_RECEIVED
    assert store.get_balance(USER_ID) == 80


def test_second_cancel_is_not_found(engine, store, scheduler):
    job = _buy(engine)
    scheduler.advance(130)
    engine.cancel(job.order_id, USER_ID)

    with pytest.raises(PreconditionFailed) as exc:
        engine.cancel(job.order_id, USER_ID)
    assert exc.value.reason == orders.NOT_FOUND
    assert store.get_balance(USER_ID) == 100


def test_actions_on_someone_elses_order_are_not_found(engine, store, scheduler):
    job = _buy(engine)
    scheduler.advance(130)
    with pytest.raises(PreconditionFailed) as exc:
        engine.cancel(job.order_id, OTHER_USER_ID)
    assert exc.value.reason == orders.NOT_FOUND
    assert store.get_balance(USER_ID) == 80


def test_cancel_store_failure_surfaces(engine, store, scheduler, monkeypatch):
    job = _buy(engine)
    scheduler.advance(130)

    def boom(order_id, status):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "set_order_status", boom)
    with pytest.raises(StoreFailure):
        engine.cancel(job.order_id, USER_ID)
    # refund was applied before the status write failed
    assert store.get_balance(USER_ID) == 100
    assert job.order_id not in engine.registry


# -------- vendor-side cancel --------

def test_vendor_cancel_refunds_as_system_cancelled(engine, store, vendor, presenter, scheduler):
    vendor.poll_results = [WAITING, CANCELLED]
    job = _buy(engine)

    scheduler.advance(10)

    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 100
    assert store.get_order(job.order_id)["status"] == db.ORDER_CANCELLED
    assert [t[1] for t in _terminals(presenter)] == [Outcome.SYSTEM_CANCELLED]


# -------- Scenario C: hard expiry without OTP --------

def test_hard_expiry_refunds(engine, store, vendor, presenter, scheduler):
    job = _buy(engine)

    scheduler.advance(899)
    assert job.order_id in engine.registry
    assert store.get_balance(USER_ID) == 80

    scheduler.advance(1)
    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 100
    assert store.get_active_orders(USER_ID) == []
    assert store.get_order(job.order_id)["status"] == db.ORDER_CANCELLED
    assert vendor.cancel_calls == ["ACT1"]
    assert [t[1] for t in _terminals(presenter)] == [Outcome.EXPIRED_REFUNDED]

    scheduler.advance(600)
    assert store.get_balance(USER_ID) == 100
    assert len(_terminals(presenter)) == 1


# -------- Scenario D: several OTPs --------

def test_multiple_otps_then_settle(engine, store, vendor, presenter, notifier, scheduler, clock):
    def script(activation_id):
        elapsed = clock.now - T0
        if elapsed < 60:
            return WAITING
        if elapsed < 90:
            return delivered("1111")
        return delivered("2222")

    vendor.poll_fn = script
    job = _buy(engine)

    scheduler.advance(95)
    assert job.otp_count == 2
    assert job.last_otp == "2222"
    assert presenter.of("extra_otp") == [(job.order_id, "2222", 2)]
    assert notifier.kinds().count("otp_received") == 1
    assert store.get_order(job.order_id)["otp_code"] == "1111"

    scheduler.advance_to(900)
    assert job.order_id not in engine.registry
    assert scheduler.live(job.order_id) == []
    assert store.get_balance(USER_ID) == 80
    assert store.get_order(job.order_id)["status"] == db.ORDER_COMPLETED
    assert store.get_active_orders(USER_ID) == []
    assert _terminals(presenter) == [(job.order_id, Outcome.SETTLED, 2)]


def test_otp_right_before_expiry_settles_once(engine, store, vendor, presenter, scheduler, clock):
    vendor.poll_fn = lambda aid: delivered("4321") if clock.now - T0 >= 890 else WAITING
    job = _buy(engine)

    scheduler.advance(2000)

    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 80
    assert [t[1] for t in _terminals(presenter)] == [Outcome.SETTLED]


def test_otp_window_settles_when_it_runs_out(engine, store, vendor, presenter, scheduler):
    vendor.poll_results = [delivered("7777")]
    job = _buy(engine)
    scheduler.advance(5)
    assert job.otp_received
    job.stop_timer(TIMER_HARD_EXPIRY)

    scheduler.advance(899)
    assert job.order_id in engine.registry
    remaining = [c[3] for c in presenter.of("otp")]
    assert remaining[0] == 900
    assert remaining[-1] == 2

    scheduler.advance(1)
    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 80
    assert [t[1] for t in _terminals(presenter)] == [Outcome.SETTLED]


# -------- new number --------

def test_request_new_number_swaps_activation(engine, store, vendor, presenter, notifier, scheduler):
    job = _buy(engine)
    old_message = job.message_id
    scheduler.advance(300)

    engine.request_new_number(job.order_id, USER_ID)

    assert vendor.request_new_calls == ["ACT1"]
    assert job.activation_id == "ACT2"
    assert job.phone == "9876543212"
    assert job.started_at == T0 + 300
    assert job.message_id == old_message
    assert store.get_balance(USER_ID) == 80
    assert "new_number_requested" in notifier.kinds()

    row = store.get_order(job.order_id)
    assert row["activation_id"] == "ACT2"
    assert row["phone"] == "9876543212"
    active = store.get_active_orders(USER_ID)
    assert active[0]["expires_at"] == int(T0 + 1200)

    # the first expiry was replaced
    scheduler.advance_to(1000)
    assert job.order_id in engine.registry
    assert store.get_balance(USER_ID) == 80

    scheduler.advance_to(1200)
    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 100
    assert vendor.cancel_calls == ["ACT2"]


def test_request_new_number_after_otp_is_rejected(engine, store, vendor, presenter, scheduler):
    vendor.poll_results = [delivered("1010")]
    job = _buy(engine)
    scheduler.advance(5)
    assert job.otp_received

    with pytest.raises(PreconditionFailed) as exc:
        engine.request_new_number(job.order_id, USER_ID)

    assert exc.value.reason == orders.OTP_RECEIVED
    assert vendor.request_new_calls == []
    assert job.activation_id == "ACT1"
    assert job.last_otp == "1010"
    assert TIMER_OTP_WINDOW in job.timers

    scheduler.advance(2000)
    assert job.order_id not in engine.registry
    assert store.get_balance(USER_ID) == 80
    row = store.get_order(job.order_id)
    assert row["otp_code"] == "1010"
    assert row["status"] == db.ORDER_COMPLETED
    assert [t[1] for t in _terminals(presenter)] == [Outcome.SETTLED]


def test_repeated_code_is_not_counted_again(engine, vendor, presenter, scheduler):
    vendor.poll_results = [delivered("1111"), delivered("2222"), delivered("1111")]
    job = _buy(engine)

    scheduler.advance(15)

    assert job.otp_count == 2
    assert job.last_otp == "2222"
    assert presenter.of("extra_otp") == [(job.order_id, "2222", 2)]
    assert presenter.of("otp")[0][1] == "1111"


def test_late_poll_for_old_activation_is_ignored(engine, store, vendor, scheduler):
    job = _buy(engine)
    engine.request_new_number(job.order_id, USER_ID)

    assert engine._apply_poll(job.order_id, "ACT1", CANCELLED) is False
    assert engine._apply_poll(job.order_id, "ACT1", delivered("0000")) is False
    assert job.order_id in engine.registry
    assert store.get_balance(USER_ID) == 80


def test_request_new_number_rejected_by_vendor(engine, vendor, store):
    vendor.request_new_result = False
    job = _buy(engine)

    with pytest.raises(VendorFailure) as exc:
        engine.request_new_number(job.order_id, USER_ID)

    assert exc.value.reason == orders.NEW_NUMBER_REJECTED
    assert job.activation_id == "ACT1"
    assert len(vendor.rent_calls) == 1
    assert store.get_balance(USER_ID) == 80


def test_request_new_number_rent_failure_keeps_job(engine, vendor, store):
    job = _buy(engine)
    vendor.rent_results.append(RentResult(success=False, error=RentError.NO_NUMBERS))

    with pytest.raises(VendorFailure):
        engine.request_new_number(job.order_id, USER_ID)

    assert job.activation_id == "ACT1"
    assert job.order_id in engine.registry
    assert store.get_order(job.order_id)["activation_id"] == "ACT1"


# -------- guards + shutdown --------

def test_timer_callbacks_for_missing_job_are_noops(engine, store, scheduler):
    job = _buy(engine)
    scheduler.advance(130)
    engine.cancel(job.order_id, USER_ID)

    engine._tick_poll(job.order_id)
    engine._tick_cancel_lock(job.order_id)
    engine._tick_otp_window(job.order_id)
    engine._on_hard_expiry(job.order_id, job.started_at)

    assert store.get_balance(USER_ID) == 100


def test_shutdown_stops_timers_without_settling(engine, store, scheduler, presenter):
    job = _buy(engine)
    engine.shutdown()

    assert len(engine.registry) == 0
    assert job.closed
    assert scheduler.live() == []
    assert store.get_balance(USER_ID) == 80
    assert len(store.get_active_orders(USER_ID)) == 1
    assert _terminals(presenter) == []


def test_active_jobs_lists_only_users_orders(engine):
    job = _buy(engine)
    assert engine.active_jobs(USER_ID) == [job]
    assert engine.active_jobs(OTHER_USER_ID) == []
