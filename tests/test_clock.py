"""Tests for the manual, thread-backed and asyncio clocks."""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from sessionkeeper.service.clock import AsyncioClock, ManualClock, SystemClock, utcnow

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestManualClock:
    def test_time_only_moves_when_advanced(self):
        clock = ManualClock(T0)

        assert clock.now() == T0
        clock.advance(timedelta(seconds=90))
        assert clock.now() == T0 + timedelta(seconds=90)
        clock.advance(2.5)
        assert clock.now() == T0 + timedelta(seconds=92.5)

    def test_rewind_steps_back_without_firing(self):
        clock = ManualClock(T0)
        fired = []
        clock.schedule_periodic(1, lambda: fired.append(clock.now()))

        clock.rewind(timedelta(seconds=30))
        assert clock.now() == T0 - timedelta(seconds=30)
        assert fired == []
        with pytest.raises(ValueError):
            clock.rewind(timedelta(seconds=-1))

    def test_rejects_moving_backwards(self):
        clock = ManualClock(T0)

        with pytest.raises(ValueError):
            clock.advance(timedelta(seconds=-1))
        with pytest.raises(ValueError):
            clock.set(T0 - timedelta(seconds=1))

    def test_periodic_callbacks_fire_in_due_order_with_due_time(self):
        clock = ManualClock(T0)
        fired = []
        clock.schedule_periodic(3, lambda: fired.append(("slow", clock.now())))
        clock.schedule_periodic(timedelta(seconds=2), lambda: fired.append(("fast", clock.now())))

        clock.advance(timedelta(seconds=6))

        assert [(name, (at - T0).total_seconds()) for name, at in fired] == [
            ("fast", 2.0),
            ("slow", 3.0),
            ("fast", 4.0),
            ("slow", 6.0),
            ("fast", 6.0),
        ]
        assert clock.now() == T0 + timedelta(seconds=6)

    def test_cancel_inside_callback_stops_further_fires(self):
        clock = ManualClock(T0)
        fired = []
        handle = None

        def _once():
            fired.append(clock.now())
            handle.cancel()

        handle = clock.schedule_periodic(1, _once)
        clock.advance(timedelta(seconds=10))

        assert fired == [T0 + timedelta(seconds=1)]
        assert handle.cancelled
        assert clock.active_timers == 0

    def test_failing_callback_does_not_stop_the_clock(self):
        clock = ManualClock(T0)
        calls = []

        def _boom():
            calls.append(1)
            raise RuntimeError("tick failed")

        clock.schedule_periodic(1, _boom)
        clock.advance(timedelta(seconds=3))

        assert len(calls) == 3

    def test_interval_must_be_positive(self):
        clock = ManualClock(T0)

        with pytest.raises(ValueError):
            clock.schedule_periodic(0, lambda: None)


class TestSystemClock:
    def test_now_is_utc(self):
        now = SystemClock().now()

        assert now.tzinfo is not None
        assert now.utcoffset() == timedelta(0)
        assert abs((utcnow() - now).total_seconds()) < 5

    def test_periodic_timer_runs_until_cancelled(self):
        clock = SystemClock()
        ticked = threading.Event()
        calls = []

        def _tick():
            calls.append(1)
            ticked.set()

        handle = clock.schedule_periodic(0.01, _tick)
        assert ticked.wait(timeout=2.0)
        handle.cancel()

        assert handle.cancelled
        assert calls


class TestAsyncioClock:
    @pytest.mark.asyncio
    async def test_periodic_task_runs_until_cancelled(self):
        clock = AsyncioClock()
        ticked = threading.Event()

        handle = clock.schedule_periodic(0.01, ticked.set)
        for _ in range(200):
            if ticked.is_set():
                break
            await asyncio.sleep(0.01)
        handle.cancel()
        await asyncio.sleep(0.05)

        assert ticked.is_set()
        assert handle.cancelled
        assert clock.now().tzinfo is not None

    @pytest.mark.asyncio
    async def test_blocking_callback_runs_off_the_loop_thread(self):
        clock = AsyncioClock()
        loop_thread = threading.get_ident()
        seen = []
        done = threading.Event()
        heartbeats = 0

        def _blocking_tick():
            seen.append(threading.get_ident())
            time.sleep(0.2)
            done.set()

        handle = clock.schedule_periodic(0.01, _blocking_tick)
        for _ in range(200):
            if done.is_set():
                break
            heartbeats += 1
            await asyncio.sleep(0.01)
        handle.cancel()

        assert done.is_set()
        assert seen[0] != loop_thread
        # The loop kept running while the callback slept
        assert heartbeats > 5
