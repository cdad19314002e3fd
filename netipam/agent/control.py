import time
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

MIN_GAP_BETWEEN_RUNS_SEC = 15.0


class Cancelled(Exception):
    """Raised out of a wait when the stop event fires."""


def wait(seconds: float, cancel: Optional[threading.Event] = None):
    """Sleep for ``seconds``; raise ``Cancelled`` if ``cancel`` is set first."""
    if seconds <= 0:
        if cancel is not None and cancel.is_set():
            raise Cancelled()
        return
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise Cancelled()


class Trigger:
    """Coalescing "run now" signal.

    Any number of ``trigger_now()`` calls before the next wait collapse into
    a single wake-up.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._pending = False

    def trigger_now(self):
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def wake(self):
        """Wake waiters without marking a trigger (used on shutdown)."""
        with self._cond:
            self._cond.notify_all()

    def wait_for_trigger(self, timeout: Optional[float] = None,
                         cancel: Optional[threading.Event] = None) -> bool:
        """Block until triggered (True) or ``timeout`` elapses (False)."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._pending or (cancel is not None and cancel.is_set()),
                timeout,
            )
            if cancel is not None and cancel.is_set():
                raise Cancelled()
            triggered = self._pending
            self._pending = False
            return triggered


class UpdaterControl(Trigger):
    """Trigger plus the process-wide gate around controller access.

    ``run()`` serializes every use of the shared controller client, whether
    it comes from the scheduled loop or an on-demand caller, and keeps at
    least ``min_gap`` seconds between consecutive uses.
    """

    def __init__(self, min_gap: float = MIN_GAP_BETWEEN_RUNS_SEC,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float, Optional[threading.Event]], None] = wait):
        super().__init__()
        self.min_gap = min_gap
        self._clock = clock
        self._sleep = sleep
        self._gate = threading.Lock()
        self._last_use: Optional[float] = None
        self._status_listeners: List[Callable[[], None]] = []
        self._delay_listeners: List[Callable[[float], None]] = []

        self.last_run: Optional[datetime] = None
        self.last_changed_count = 0
        self.last_error: Optional[str] = None

    def on_status_changed(self, listener: Callable[[], None]):
        self._status_listeners.append(listener)

    def on_delay_started(self, listener: Callable[[float], None]):
        self._delay_listeners.append(listener)

    def notify_status_changed(self):
        for listener in list(self._status_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Status listener failed")

    def run(self, action: Callable[[], object], cancel: Optional[threading.Event] = None):
        with self._gate:
            if self._last_use is not None:
                since = self._clock() - self._last_use
                if 0 <= since < self.min_gap:
                    remaining = self.min_gap - since
                    for listener in list(self._delay_listeners):
                        try:
                            listener(remaining)
                        except Exception:
                            logger.exception("Delay listener failed")
                    logger.debug(f"Controller gate: waiting {remaining:.1f}s before next use")
                    self._sleep(remaining, cancel)
            try:
                return action()
            finally:
                self._last_use = self._clock()
