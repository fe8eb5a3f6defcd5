"""
Tests for the async session clock: epochs, drift-free pacing, batch bounds.
"""
import asyncio

import pytest

from services.market.clock import FATAL_MESSAGE, SessionClock
from services.market.params import MarketParams
from services.market.session import MarketSession


class _FakeTime:
    """Virtual wall clock; ``sleep`` advances it instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _make_clock(tick_interval=0.0, **kwargs) -> SessionClock:
    session = MarketSession(MarketParams(), seed=1)
    return SessionClock(session, asyncio.Lock(), tick_interval=tick_interval, **kwargs)


class TestSessionClock:
    @pytest.mark.asyncio
    async def test_runs_bounded_batch(self):
        clock = _make_clock()
        clock.running = True
        clock.session.epoch = 1
        assert await clock.run(1, max_ticks=5) == 5
        assert clock.session.tick == 5

    @pytest.mark.asyncio
    async def test_stale_epoch_does_nothing(self):
        clock = _make_clock()
        clock.running = True
        clock.session.epoch = 2
        assert await clock.run(1, max_ticks=5) == 0
        assert clock.session.tick == 0

    @pytest.mark.asyncio
    async def test_stopped_clock_does_nothing(self):
        clock = _make_clock()
        clock.session.epoch = 1
        assert await clock.run(1, max_ticks=5) == 0
        assert clock.session.tick == 0

    @pytest.mark.asyncio
    async def test_batch_runs_without_background_loop(self):
        clock = _make_clock()
        assert await clock.run_batch(5) == 5
        assert clock.session.tick == 5
        assert not clock.running

    @pytest.mark.asyncio
    async def test_batch_skipped_while_loop_owns_session(self):
        clock = _make_clock()
        clock.running = True
        assert await clock.run_batch(5) == 0
        assert clock.session.tick == 0

    @pytest.mark.asyncio
    async def test_restart_supersedes_previous_loop(self):
        clock = _make_clock()
        first_epoch = clock.start()
        first_task = clock._task
        second_epoch = clock.start()
        assert second_epoch == first_epoch + 1

        for _ in range(5):
            await asyncio.sleep(0)
        assert first_task.done()
        assert first_task.result() == 0
        assert clock.session.tick > 0

        await clock.stop()
        assert not clock.running
        tick = clock.session.tick
        await asyncio.sleep(0.05)
        assert clock.session.tick == tick

    @pytest.mark.asyncio
    async def test_tick_targets_do_not_drift(self):
        fake = _FakeTime()

        async def slow_tick(report):
            fake.now += 0.4

        clock = _make_clock(tick_interval=1.0, on_tick=slow_tick, time_fn=fake.time, sleep=fake.sleep)
        clock.running = True
        clock.session.epoch = 1
        assert await clock.run(1, max_ticks=3) == 3
        # ticks land at 0, 1 and 2; each spends 0.4s in the callback
        assert fake.now == pytest.approx(2.4)

    @pytest.mark.asyncio
    async def test_batch_time_bound(self):
        fake = _FakeTime()
        clock = _make_clock(tick_interval=1.0, max_batch_seconds=2.5, time_fn=fake.time, sleep=fake.sleep)
        clock.running = True
        clock.session.epoch = 1
        assert await clock.run(1) == 3
        assert clock.session.tick == 3

    @pytest.mark.asyncio
    async def test_failure_stops_loop_with_operator_message(self):
        async def broken(report):
            raise RuntimeError("database unavailable")

        clock = _make_clock(on_tick=broken)
        clock.running = True
        clock.session.epoch = 1
        assert await clock.run(1, max_ticks=5) == 0
        assert not clock.running
        assert clock.last_error == "database unavailable"
        assert clock.session.closing_message == FATAL_MESSAGE

    @pytest.mark.asyncio
    async def test_ticks_wait_for_lock(self):
        clock = _make_clock()
        clock.running = True
        clock.session.epoch = 1
        async with clock.lock:
            task = asyncio.create_task(clock.run(1, max_ticks=1))
            await asyncio.sleep(0)
            assert clock.session.tick == 0
        assert await task == 1
        assert clock.session.tick == 1
