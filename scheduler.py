# scheduler.py
# Thread-backed timers for the order engine.
# - every(): repeating task, ticks of one task never overlap (next wait starts after the tick returns)
# - after(): one-shot task
# Both return a handle with cancel(); shutdown() cancels everything still pending.

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


class _Repeating(TimerHandle):
    def __init__(self, interval: float, fn: Callable[[], None], name: str, on_exit):
        super().__init__(name)
        self.interval = interval
        self.fn = fn
        self._on_exit = on_exit
        self._thread = threading.Thread(target=self._run, name=f"timer-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            while not self._cancelled.wait(self.interval):
                try:
                    self.fn()
                except Exception:
                    logger.exception("Timer %s tick failed", self.name)
        finally:
            self._on_exit(self)


class _OneShot(TimerHandle):
    def __init__(self, delay: float, fn: Callable[[], None], name: str, on_exit):
        super().__init__(name)
        self.fn = fn
        self._on_exit = on_exit
        self._timer = threading.Timer(delay, self._run)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        super().cancel()
        self._timer.cancel()

    def _run(self) -> None:
        try:
            if not self.cancelled:
                self.fn()
        except Exception:
            logger.exception("Timer %s failed", self.name)
        finally:
            self._cancelled.set()
            self._on_exit(self)


class Scheduler:
    def __init__(self):
        self._handles = set()
        self._lock = threading.Lock()
        self._closed = False

    def _track(self, handle) -> None:
        with self._lock:
            if self._closed:
                handle.cancel()
                return
            self._handles.add(handle)
        handle.start()

    def _forget(self, handle) -> None:
        with self._lock:
            self._handles.discard(handle)

    def every(self, interval: float, fn: Callable[[], None], name: Optional[str] = None) -> TimerHandle:
        handle = _Repeating(interval, fn, name or getattr(fn, "__name__", "task"), self._forget)
        self._track(handle)
        return handle

    def after(self, delay: float, fn: Callable[[], None], name: Optional[str] = None) -> TimerHandle:
        handle = _OneShot(delay, fn, name or getattr(fn, "__name__", "task"), self._forget)
        self._track(handle)
        return handle

    def pending(self) -> int:
        with self._lock:
            return len(self._handles)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._handles)
            self._handles.clear()
        for h in handles:
            h.cancel()
