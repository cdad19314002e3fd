import threading

import pytest

from netipam.agent.control import Cancelled, Trigger, UpdaterControl, wait


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestTrigger:
    def test_times_out_without_trigger(self):
        assert Trigger().wait_for_trigger(timeout=0.01) is False

    def test_repeated_triggers_coalesce(self):
        trigger = Trigger()
        for _ in range(5):
            trigger.trigger_now()
        assert trigger.wait_for_trigger(timeout=0.01) is True
        assert trigger.wait_for_trigger(timeout=0.01) is False

    def test_trigger_from_other_thread(self):
        trigger = Trigger()
        timer = threading.Timer(0.05, trigger.trigger_now)
        timer.start()
        try:
            assert trigger.wait_for_trigger(timeout=5) is True
        finally:
            timer.cancel()

    def test_cancel_raises(self):
        trigger = Trigger()
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            trigger.wait_for_trigger(timeout=5, cancel=cancel)


class TestWait:
    def test_cancelled_wait(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            wait(10, cancel)

    def test_zero_wait_returns(self):
        wait(0, threading.Event())


class TestGate:
    def make(self):
        clock = FakeClock()
        sleeps = []

        def sleep(seconds, cancel=None):
            sleeps.append(seconds)
            clock.now += seconds
        return UpdaterControl(min_gap=15, clock=clock, sleep=sleep), clock, sleeps

    def test_first_use_runs_immediately(self):
        control, clock, sleeps = self.make()
        assert control.run(lambda: "ok") == "ok"
        assert sleeps == []

    def test_keeps_minimum_gap(self):
        control, clock, sleeps = self.make()
        control.run(lambda: None)
        clock.now += 5
        control.run(lambda: None)
        assert sleeps == [10]

        clock.now += 20
        control.run(lambda: None)
        assert sleeps == [10]

    def test_failed_action_still_counts_as_use(self):
        control, clock, sleeps = self.make()
        with pytest.raises(RuntimeError):
            control.run(self._boom)
        clock.now += 1
        control.run(lambda: None)
        assert sleeps == [14]

    def test_delay_listener(self):
        control, clock, sleeps = self.make()
        delays = []
        control.on_delay_started(delays.append)
        control.run(lambda: None)
        clock.now += 3
        control.run(lambda: None)
        assert delays == [12]

    def test_status_listener_errors_are_contained(self):
        control, _, _ = self.make()
        calls = []

        def broken():
            raise ValueError("listener")
        control.on_status_changed(broken)
        control.on_status_changed(lambda: calls.append(1))
        control.notify_status_changed()
        assert calls == [1]

    @staticmethod
    def _boom():
        raise RuntimeError("boom")
