# state.py
# Live order jobs (one per order id) and the registry that owns them.
# A job owns its timers; closing the job cancels every one of them.

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

TIMER_CANCEL_LOCK = "cancel_lock"
TIMER_POLL = "poll"
TIMER_OTP_WINDOW = "otp_window"
TIMER_HARD_EXPIRY = "hard_expiry"


class Phase(str, Enum):
    ACTIVE_LOCKED = "active_locked"
    ACTIVE_CANCELLABLE = "active_cancellable"
    OTP_DELIVERED = "otp_delivered"


class Outcome(str, Enum):
    SETTLED = "settled"
    EXPIRED_REFUNDED = "expired_refunded"
    CANCELLED_REFUNDED = "cancelled_refunded"
    SYSTEM_CANCELLED = "system_cancelled"

    @property
    def refunded(self) -> bool:
        return self is not Outcome.SETTLED


class DuplicateJob(Exception):
    pass


@dataclass
class Job:
    order_id: str
    activation_id: str
    user_id: int
    chat_id: int
    price: float
    phone: str
    service_id: str
    service_name: str
    service_code: str
    country_code: str
    server_index: int
    server_name: str
    started_at: float
    message_id: Optional[int] = None

    otp_received: bool = False
    last_otp: Optional[str] = None
    otp_count: int = 0
    otp_started_at: Optional[float] = None
    seen_codes: Set[str] = field(default_factory=set, repr=False)

    closed: bool = False
    timers: Dict[str, object] = field(default_factory=dict, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def phase(self, now: float, lock_seconds: float) -> Phase:
        if self.otp_received:
            return Phase.OTP_DELIVERED
        if now - self.started_at < lock_seconds:
            return Phase.ACTIVE_LOCKED
        return Phase.ACTIVE_CANCELLABLE

    def lock_remaining(self, now: float, lock_seconds: float) -> float:
        return max(0.0, lock_seconds - (now - self.started_at))

    def otp_window_remaining(self, now: float, window_seconds: float) -> float:
        if self.otp_started_at is None:
            return float(window_seconds)
        return max(0.0, window_seconds - (now - self.otp_started_at))

    # ---------- timers ----------
    def set_timer(self, name: str, handle) -> None:
        """Attach a timer, replacing (and cancelling) any timer with the same name."""
        with self.lock:
            if self.closed:
                handle.cancel()
                return
            old = self.timers.pop(name, None)
            if old is not None:
                old.cancel()
            self.timers[name] = handle

    def stop_timer(self, name: str) -> None:
        with self.lock:
            handle = self.timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def close(self) -> None:
        with self.lock:
            self.closed = True
            handles = list(self.timers.values())
            self.timers.clear()
        for h in handles:
            h.cancel()


class JobRegistry:
    """Process-local table of live jobs keyed by order id."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            if job.order_id in self._jobs:
                raise DuplicateJob(job.order_id)
            self._jobs[job.order_id] = job

    def get(self, order_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(order_id)

    def is_live(self, job: Job) -> bool:
        with self._lock:
            return self._jobs.get(job.order_id) is job

    def take(self, order_id: str, job: Optional[Job] = None) -> Optional[Job]:
        """Remove and return the job. With `job` given, only that exact instance is removed."""
        with self._lock:
            current = self._jobs.get(order_id)
            if current is None or (job is not None and current is not job):
                return None
            del self._jobs[order_id]
            return current

    def for_user(self, user_id: int) -> List[Job]:
        with self._lock:
            return [j for j in self._jobs.values() if j.user_id == user_id]

    def drain(self) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            return jobs

    def __contains__(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
