# orders.py
# Order lifecycle engine: purchase -> poll vendor -> OTP window -> settle / refund
#
# Every path that touches a job runs under job.lock and first checks the job is
# still registered. Terminal transitions remove the job from the registry and
# close it (cancelling its timers) before any I/O, so only one of them can win.

import logging
import time
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional

import db
import pricing
import services_catalog
from config import (
    POLL_INTERVAL_SECONDS,
    COUNTDOWN_INTERVAL_SECONDS,
    CANCEL_LOCK_SECONDS,
    ORDER_TIMEOUT_SECONDS,
)
from firex_api import PollResult, PollStatus, RentError, normalize_phone
from state import (
    Job,
    JobRegistry,
    Outcome,
    TIMER_CANCEL_LOCK,
    TIMER_POLL,
    TIMER_OTP_WINDOW,
    TIMER_HARD_EXPIRY,
)

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
CANCEL_LOCKED = "cancel_locked"
OTP_RECEIVED = "otp_received"
ACCESS_DENIED = "access_denied"
SERVICE_UNAVAILABLE = "service_unavailable"
INSUFFICIENT_BALANCE = "insufficient_balance"
VENDOR_FAILED = "vendor_failed"
NEW_NUMBER_REJECTED = "new_number_rejected"
STORE_FAILED = "store_failed"


class OrderError(Exception):
    reason = "error"

    def __init__(self, reason: Optional[str] = None, message: str = ""):
        if reason:
            self.reason = reason
        super().__init__(message or self.reason)


class PreconditionFailed(OrderError):
    def __init__(self, reason: str, message: str = "", remaining: float = 0.0):
        super().__init__(reason, message)
        self.remaining = remaining


class InsufficientBalance(OrderError):
    reason = INSUFFICIENT_BALANCE

    def __init__(self, required: float, balance: float):
        super().__init__(message=f"required {required}, balance {balance}")
        self.required = required
        self.balance = balance


class VendorFailure(OrderError):
    reason = VENDOR_FAILED

    def __init__(self, error_kind: Optional[RentError] = None, reason: Optional[str] = None):
        super().__init__(reason, message=str(error_kind.value if error_kind else reason or self.reason))
        self.error_kind = error_kind


class StoreFailure(OrderError):
    reason = STORE_FAILED


@dataclass(frozen=True)
class KeyboardState:
    lock_remaining: float = 0.0

    @property
    def cancel_unlocked(self) -> bool:
        return self.lock_remaining <= 0


def _valid_local_phone(phone: str) -> bool:
    return len(phone) == 10 and phone.isdigit()


class OrderEngine:
    def __init__(self, store, vendor, presenter, notifier, scheduler,
                 registry: Optional[JobRegistry] = None,
                 clock: Callable[[], float] = time.time,
                 access_check: Optional[Callable[[int], bool]] = None,
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 countdown_interval: float = COUNTDOWN_INTERVAL_SECONDS,
                 cancel_lock: float = CANCEL_LOCK_SECONDS,
                 order_timeout: float = ORDER_TIMEOUT_SECONDS):
        self.store = store
        self.vendor = vendor
        self.presenter = presenter
        self.notifier = notifier
        self.scheduler = scheduler
        self.registry = registry if registry is not None else JobRegistry()
        self.clock = clock
        self.access_check = access_check
        self.poll_interval = poll_interval
        self.countdown_interval = countdown_interval
        self.cancel_lock = cancel_lock
        self.order_timeout = order_timeout

    # =========================
    # Purchase
    # =========================
    def purchase(self, user_id: int, service_id: str, server_index: int, chat_id: Optional[int] = None) -> Job:
        resolved = services_catalog.resolve(service_id, server_index)
        if resolved is None:
            raise PreconditionFailed(SERVICE_UNAVAILABLE)
        if self.access_check is not None and not self.access_check(user_id):
            raise PreconditionFailed(ACCESS_DENIED)

        service, server = resolved
        quote = pricing.calculate_discounted_price(server.price, self.store.get_monthly_deposit(user_id))
        balance = self.store.get_balance(user_id)
        if balance < quote.final_price:
            raise InsufficientBalance(quote.final_price, balance)

        try:
            self.store.adjust_balance(user_id, -quote.final_price, floor=0)
        except db.InsufficientFunds:
            raise InsufficientBalance(quote.final_price, self.store.get_balance(user_id))
        except Exception as e:
            raise StoreFailure(message=str(e)) from e

        chat_id = user_id if chat_id is None else chat_id
        message_id = self._render(self.presenter.render_purchase_progress, chat_id, service.name, quote)

        try:
            job = self._open_order(user_id, chat_id, message_id, service, server, quote)
        except Exception as e:
            self._refund_failed_purchase(user_id, quote.final_price)
            err = e if isinstance(e, OrderError) else StoreFailure(message=str(e))
            self._render(self.presenter.render_purchase_failed, chat_id, message_id, err, quote.final_price)
            if err is e:
                raise
            raise err from e

        with job.lock:
            self._render(self.presenter.render_order_active, job, KeyboardState(self.cancel_lock))
        self._start_timers(job)
        self._notify(self.notifier.order_placed, job, quote.original_price, quote.discount)
        logger.info("Order %s placed: user=%s service=%s price=%s", job.order_id, user_id, service.id, quote.final_price)
        return job

    def _open_order(self, user_id, chat_id, message_id, service, server, quote) -> Job:
        rent = self.vendor.rent_number(server.service, server.country)
        if not rent.success:
            raise VendorFailure(rent.error or RentError.UNKNOWN)

        phone = normalize_phone(rent.phone)
        if not _valid_local_phone(phone):
            logger.warning("Vendor returned bad number %r for activation %s", rent.phone, rent.activation_id)
            self._vendor_cancel(rent.activation_id)
            raise VendorFailure(RentError.BAD_NUMBER)

        now = self.clock()
        order_id = self._new_order_id(now)
        try:
            self.store.add_order({
                "order_id": order_id,
                "activation_id": rent.activation_id,
                "user_id": user_id,
                "service": service.name,
                "phone": phone,
                "price": quote.final_price,
                "server_used": server.name,
                "original_price": quote.original_price,
                "discount_applied": quote.discount,
                "status": db.ORDER_ACTIVE,
                "order_time": int(now),
            })
            self.store.upsert_active_order({
                "order_id": order_id,
                "activation_id": rent.activation_id,
                "user_id": user_id,
                "phone": phone,
                "product": service.name,
                "expires_at": int(now + self.order_timeout),
                "created_at": int(now),
                "server_used": server.name,
            })
            job = Job(
                order_id=order_id,
                activation_id=rent.activation_id,
                user_id=user_id,
                chat_id=chat_id,
                message_id=message_id,
                price=quote.final_price,
                phone=phone,
                service_id=service.id,
                service_name=service.name,
                service_code=server.service,
                country_code=server.country,
                server_index=server.index,
                server_name=server.name,
                started_at=now,
            )
            self.registry.add(job)
        except Exception:
            self._vendor_cancel(rent.activation_id)
            self._best_effort(self.store.set_order_status, order_id, db.ORDER_CANCELLED)
            self._best_effort(self.store.delete_active_order, order_id)
            raise
        return job

    def _refund_failed_purchase(self, user_id: int, amount: float) -> None:
        try:
            self.store.adjust_balance(user_id, amount)
        except Exception:
            logger.exception("Refund of %s for user %s after failed purchase did not go through", amount, user_id)

    def _new_order_id(self, now: float) -> str:
        while True:
            order_id = f"ORD{int(now * 1000)}{uuid.uuid4().hex[:5]}".upper()
            if order_id not in self.registry:
                return order_id

    # =========================
    # Timers
    # =========================
    def _start_timers(self, job: Job) -> None:
        oid = job.order_id
        job.set_timer(TIMER_CANCEL_LOCK, self.scheduler.every(
            self.countdown_interval, partial(self._tick_cancel_lock, oid), name=f"{oid}:{TIMER_CANCEL_LOCK}"))
        job.set_timer(TIMER_POLL, self.scheduler.every(
            self.poll_interval, partial(self._tick_poll, oid), name=f"{oid}:{TIMER_POLL}"))
        job.set_timer(TIMER_HARD_EXPIRY, self.scheduler.after(
            self.order_timeout, partial(self._on_hard_expiry, oid, job.started_at), name=f"{oid}:{TIMER_HARD_EXPIRY}"))

    def _tick_cancel_lock(self, order_id: str) -> None:
        job = self.registry.get(order_id)
        if job is None:
            return
        with job.lock:
            if job.closed or job.otp_received:
                job.stop_timer(TIMER_CANCEL_LOCK)
                return
            remaining = job.lock_remaining(self.clock(), self.cancel_lock)
            self._render(self.presenter.render_order_active, job, KeyboardState(remaining))
            if remaining <= 0:
                job.stop_timer(TIMER_CANCEL_LOCK)

    def _tick_poll(self, order_id: str) -> None:
        job = self.registry.get(order_id)
        if job is None:
            return
        activation_id = job.activation_id
        result = self.vendor.poll(activation_id)
        self._apply_poll(order_id, activation_id, result)

    def _tick_otp_window(self, order_id: str) -> None:
        job = self.registry.get(order_id)
        if job is None:
            return
        with job.lock:
            if job.closed:
                return
            remaining = job.otp_window_remaining(self.clock(), self.order_timeout)
            if remaining > 0:
                self._render(self.presenter.render_otp_delivered, job, job.last_otp, remaining)
                return
            if not self._claim(job):
                return
        logger.info("Order %s OTP window over (%s OTPs)", order_id, job.otp_count)
        self._close_settled(job)

    def _on_hard_expiry(self, order_id: str, started_at: float) -> None:
        job = self.registry.get(order_id)
        if job is None:
            return
        with job.lock:
            if job.started_at != started_at:
                return
            if not self._claim(job):
                return
        logger.info("Order %s hit hard expiry (otp_received=%s)", order_id, job.otp_received)
        self._vendor_cancel(job.activation_id)
        if job.otp_received:
            self._close_settled(job)
        else:
            self._close_refunded(job, Outcome.EXPIRED_REFUNDED, "Expired: no OTP within 15 minutes")

    # =========================
    # Poll results
    # =========================
    def _apply_poll(self, order_id: str, activation_id: str, result: PollResult) -> bool:
        job = self.registry.get(order_id)
        if job is None:
            return False

        if result.status == PollStatus.DELIVERED and result.code:
            return self._deliver_otp(job, activation_id, result.code)

        if result.status == PollStatus.CANCELLED:
            with job.lock:
                if job.activation_id != activation_id or not self._claim(job):
                    return False
            logger.info("Order %s cancelled on the vendor side", order_id)
            self._close_refunded(job, Outcome.SYSTEM_CANCELLED, "Cancelled by provider")
            return True

        return False

    def _deliver_otp(self, job: Job, activation_id: str, code: str) -> bool:
        with job.lock:
            if job.closed or not self.registry.is_live(job):
                return False
            if job.activation_id != activation_id or code in job.seen_codes:
                return False

            first = not job.otp_received
            if first:
                try:
                    self.store.mark_order_otp(job.order_id, code)
                except Exception as e:
                    raise StoreFailure(message=str(e)) from e

            job.seen_codes.add(code)
            job.last_otp = code
            job.otp_count += 1
            if first:
                job.otp_received = True
                job.otp_started_at = self.clock()
                job.stop_timer(TIMER_CANCEL_LOCK)
                job.set_timer(TIMER_OTP_WINDOW, self.scheduler.every(
                    self.countdown_interval, partial(self._tick_otp_window, job.order_id),
                    name=f"{job.order_id}:{TIMER_OTP_WINDOW}"))
                self._render(self.presenter.render_otp_delivered, job, code, float(self.order_timeout))
            else:
                self._render(self.presenter.render_extra_otp, job, code)

        if first:
            logger.info("Order %s got its first OTP", job.order_id)
            self._notify(self.notifier.otp_received, job, code)
        return True

    # =========================
    # User actions
    # =========================
    def check_now(self, order_id: str, user_id: Optional[int] = None) -> PollResult:
        job = self._owned_job(order_id, user_id)
        activation_id = job.activation_id
        result = self.vendor.poll(activation_id)
        self._apply_poll(order_id, activation_id, result)
        return result

    def cancel(self, order_id: str, user_id: Optional[int] = None) -> Job:
        job = self._owned_job(order_id, user_id)
        with job.lock:
            if not self.registry.is_live(job):
                raise PreconditionFailed(NOT_FOUND)
            remaining = job.lock_remaining(self.clock(), self.cancel_lock)
            if remaining > 0:
                raise PreconditionFailed(CANCEL_LOCKED, remaining=remaining)
            if job.otp_received:
                raise PreconditionFailed(OTP_RECEIVED)
            if not self._claim(job):
                raise PreconditionFailed(NOT_FOUND)

        self._vendor_cancel(job.activation_id)
        self._close_refunded(job, Outcome.CANCELLED_REFUNDED, "User cancelled")
        logger.info("Order %s cancelled by user %s", order_id, job.user_id)
        return job

    def request_new_number(self, order_id: str, user_id: Optional[int] = None) -> Job:
        job = self._owned_job(order_id, user_id)
        with job.lock:
            if not self.registry.is_live(job):
                raise PreconditionFailed(NOT_FOUND)
            if job.otp_received:
                raise PreconditionFailed(OTP_RECEIVED)

            if not self.vendor.request_new(job.activation_id):
                raise VendorFailure(reason=NEW_NUMBER_REJECTED)

            rent = self.vendor.rent_number(job.service_code, job.country_code)
            if not rent.success:
                raise VendorFailure(rent.error or RentError.UNKNOWN)

            phone = normalize_phone(rent.phone)
            if not _valid_local_phone(phone):
                self._vendor_cancel(rent.activation_id)
                raise VendorFailure(RentError.BAD_NUMBER)

            now = self.clock()
            try:
                self.store.update_order_number(job.order_id, rent.activation_id, phone)
                self.store.upsert_active_order({
                    "order_id": job.order_id,
                    "activation_id": rent.activation_id,
                    "user_id": job.user_id,
                    "phone": phone,
                    "product": job.service_name,
                    "expires_at": int(now + self.order_timeout),
                    "created_at": int(now),
                    "server_used": job.server_name,
                })
            except Exception as e:
                self._vendor_cancel(rent.activation_id)
                raise StoreFailure(message=str(e)) from e

            job.activation_id = rent.activation_id
            job.phone = phone
            job.started_at = now
            job.seen_codes.clear()
            self._start_timers(job)
            self._render(self.presenter.render_order_active, job, KeyboardState(self.cancel_lock))

        logger.info("Order %s moved to new number (activation %s)", order_id, job.activation_id)
        self._notify(self.notifier.new_number_requested, job)
        return job

    def active_jobs(self, user_id: int) -> List[Job]:
        return self.registry.for_user(user_id)

    def shutdown(self) -> None:
        """Stop every timer. Jobs are left as-is; active_orders keeps the durable mirror."""
        jobs = self.registry.drain()
        for job in jobs:
            job.close()
        self.scheduler.shutdown()
        if jobs:
            logger.info("Engine stopped with %d jobs in flight", len(jobs))

    # =========================
    # Terminal paths
    # =========================
    def _claim(self, job: Job) -> bool:
        """Win the right to finish this job: unregister + cancel timers. Only one caller gets True."""
        with job.lock:
            if self.registry.take(job.order_id, job) is None:
                return False
            job.close()
            return True

    def _close_settled(self, job: Job) -> None:
        try:
            self.store.delete_active_order(job.order_id)
        finally:
            self._render(self.presenter.render_terminal, job, Outcome.SETTLED)

    def _close_refunded(self, job: Job, outcome: Outcome, reason: str) -> None:
        try:
            self.store.adjust_balance(job.user_id, job.price)
            self.store.set_order_status(job.order_id, db.ORDER_CANCELLED)
            self.store.delete_active_order(job.order_id)
        except Exception as e:
            logger.exception("Closing order %s (%s) failed", job.order_id, outcome.value)
            raise StoreFailure(message=str(e)) from e

        self._notify(self.notifier.order_cancelled, job, reason)
        self._render(self.presenter.render_terminal, job, outcome)

    def _owned_job(self, order_id: str, user_id: Optional[int]) -> Job:
        job = self.registry.get(order_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise PreconditionFailed(NOT_FOUND)
        return job

    # =========================
    # Best-effort side channels
    # =========================
    def _vendor_cancel(self, activation_id: str) -> bool:
        try:
            return bool(self.vendor.cancel(activation_id))
        except Exception as e:
            logger.warning("Vendor cancel for %s failed: %s", activation_id, e)
            return False

    def _render(self, fn, *args):
        try:
            return fn(*args)
        except Exception as e:
            logger.warning("Render %s failed: %s", getattr(fn, "__name__", fn), e)
            return None

    def _notify(self, fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning("Notify %s failed: %s", getattr(fn, "__name__", fn), e)

    def _best_effort(self, fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning("%s%r failed: %s", getattr(fn, "__name__", fn), args, e)
