import logging
import threading
from typing import Optional

from netipam.config import STARTUP_DELAY_SEC
from netipam.api.schemas import SettingsSnapshot
from netipam.api.settings import SettingsService
from .control import Cancelled, UpdaterControl, wait
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

ENABLE_TRANSITION_DELAY_SEC = 30.0
MIN_INTERVAL_SEC = 10
MAX_INTERVAL_SEC = 3600


def clamp_interval(seconds: int) -> int:
    return max(MIN_INTERVAL_SEC, min(MAX_INTERVAL_SEC, seconds))


class OnlineStatusUpdater(threading.Thread):
    """Background loop driving reconciliation passes.

    Enabled: each cycle races the clamped interval against a manual trigger.
    Disabled: only manual triggers run a pass. Turning the updater on
    schedules a first run after a short warm-up, cancelled if it is turned
    off again before firing.
    """

    def __init__(self, reconciler: Reconciler, control: UpdaterControl,
                 settings: SettingsService, stop_event: Optional[threading.Event] = None,
                 startup_delay: float = STARTUP_DELAY_SEC,
                 warmup: float = ENABLE_TRANSITION_DELAY_SEC):
        super().__init__(name="online-status-updater", daemon=True)
        self.reconciler = reconciler
        self.control = control
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.startup_delay = startup_delay
        self.warmup = warmup

        self._snapshot: Optional[SettingsSnapshot] = None
        self._timer_lock = threading.Lock()
        self._enable_timer: Optional[threading.Timer] = None

        settings.subscribe(self.apply_settings)

    @property
    def enabled(self) -> bool:
        s = self._snapshot
        return s is not None and s.updater_enabled and s.updater_interval_seconds > 0

    def apply_settings(self, snap: SettingsSnapshot):
        was_enabled = self.enabled
        self._snapshot = snap

        logger.info(
            f"Updater settings applied: enabled={snap.updater_enabled}, "
            f"interval={snap.updater_interval_seconds}s, "
            f"update_connection_fields={snap.update_connection_fields_when_online}"
        )

        if not was_enabled and self.enabled:
            self._schedule_enable_run()
        elif not self.enabled:
            self._cancel_enable_run()

    def _schedule_enable_run(self):
        with self._timer_lock:
            if self._enable_timer is not None:
                self._enable_timer.cancel()
            self._enable_timer = threading.Timer(self.warmup, self._fire_enable_run)
            self._enable_timer.daemon = True
            self._enable_timer.start()

    def _fire_enable_run(self):
        if self.enabled and not self.stop_event.is_set():
            logger.info(f"Updater enabled. Triggering first run after {self.warmup:.0f}s warm-up.")
            self.control.trigger_now()

    def _cancel_enable_run(self):
        with self._timer_lock:
            if self._enable_timer is not None:
                self._enable_timer.cancel()
                self._enable_timer = None

    def run(self):
        try:
            self._snapshot = self.settings.snapshot()
            wait(self.startup_delay, self.stop_event)
            if self.enabled:
                self.control.trigger_now()

            while not self.stop_event.is_set():
                try:
                    self.run_cycle()
                except Cancelled:
                    raise
                except Exception as e:
                    self.control.last_error = str(e) or e.__class__.__name__
                    self.control.notify_status_changed()
                    logger.exception("Online status updater failed")
        except Cancelled:
            pass
        finally:
            self._cancel_enable_run()
            self.settings.unsubscribe(self.apply_settings)
            logger.info("Online status updater stopped")

    def run_cycle(self) -> bool:
        """Wait for the next trigger or interval, then run one pass. True if a pass ran."""
        if self.enabled:
            timeout = clamp_interval(self._snapshot.updater_interval_seconds)
            triggered = self.control.wait_for_trigger(timeout, self.stop_event)
        else:
            triggered = self.control.wait_for_trigger(None, self.stop_event)

        if not self.enabled and not triggered:
            return False

        self.control.run(lambda: self.reconciler.run_once(self.stop_event), self.stop_event)
        return True

    def stop(self):
        self.stop_event.set()
        self._cancel_enable_run()
        self.control.wake()
