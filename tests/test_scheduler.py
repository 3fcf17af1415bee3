"""
Round scheduler tests: the repeating countdown -> active -> crashed cycle.
"""

import asyncio
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from engine import CrashGameEngine, GameConfig, GameState
from scheduler import RoundScheduler
from settlement import InMemorySettlementSink, Outcome

from crash_fixtures import CrashPoints, FakeClock


class TestRoundCycle(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = FakeClock(1000.0)
        self.sink = InMemorySettlementSink()
        self.source = CrashPoints(["2.00", "1.00", "3.50"])
        self.engine = CrashGameEngine(
            self.sink,
            GameConfig(),
            crash_point_source=self.source,
            clock=self.clock,
        )
        self.scheduler = RoundScheduler(self.engine)

    async def test_full_cycle(self):
        self.assertEqual(await self.scheduler.tick(), GameState.COUNTDOWN)
        first = self.engine.current_round
        self.assertEqual(first.round_id, 1)
        self.assertEqual(first.crash_point, Decimal("2.00"))

        self.clock.set(1004.95)
        self.assertIsNone(await self.scheduler.tick())

        self.clock.set(1005.0)
        self.assertEqual(await self.scheduler.tick(), GameState.ACTIVE)

        self.clock.set(1009.95)
        self.assertIsNone(await self.scheduler.tick())

        self.clock.set(1010.0)
        self.assertEqual(await self.scheduler.tick(), GameState.CRASHED)

        self.clock.set(1012.95)
        self.assertIsNone(await self.scheduler.tick())
        self.assertIs(self.engine.current_round, first)

        self.clock.set(1013.0)
        self.assertEqual(await self.scheduler.tick(), GameState.COUNTDOWN)
        second = self.engine.current_round
        self.assertEqual(second.round_id, 2)
        self.assertEqual(second.crash_point, Decimal("1.00"))
        self.assertEqual(len(second.ledger), 0)
        self.assertEqual(second.countdown_start, 1013.0)

    async def test_late_activation_keeps_boundary(self):
        await self.scheduler.tick()
        self.clock.set(1005.3)
        await self.scheduler.tick()
        rnd = self.engine.current_round
        self.assertEqual(rnd.active_start, 1005.0)
        # 300ms into the flight already
        self.assertEqual(rnd.multiplier(1005.3, self.engine.config), Decimal("1.06"))

    async def test_instant_crash_round(self):
        self.source.calls = 1   # next draw is 1.00x
        await self.scheduler.tick()
        await self.engine.place_bet("alice", 10)

        self.clock.set(1005.0)
        self.assertEqual(await self.scheduler.tick(), GameState.ACTIVE)
        result = await self.engine.cashout("alice")
        self.assertEqual(result.reason, "too_late")

        self.clock.set(1005.05)
        self.assertEqual(await self.scheduler.tick(), GameState.CRASHED)
        self.assertEqual([r.outcome for r in self.sink.results], [Outcome.LOSS])

    async def test_history_newest_first(self):
        await self.scheduler.tick()
        for ts in (1005.0, 1010.0, 1013.0, 1018.0, 1018.05):
            self.clock.set(ts)
            await self.scheduler.tick()
        self.assertEqual(self.engine.history(), [1.0, 2.0])
        self.assertEqual(self.engine.history(1), [1.0])

    async def test_start_new_round_refuses_while_running(self):
        from engine import StateError
        await self.scheduler.tick()
        with self.assertRaises(StateError):
            await self.engine.start_new_round()


class TestSchedulerResilience(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = CrashGameEngine(
            InMemorySettlementSink(),
            GameConfig(tick_interval_ms=5),
            crash_point_source=CrashPoints(["2.00"]),
        )
        self.scheduler = RoundScheduler(self.engine)

    async def test_tick_failure_is_swallowed(self):
        with patch.object(self.engine, "start_new_round", AsyncMock(side_effect=RuntimeError("boom"))):
            with self.assertLogs("crash.scheduler", level="ERROR"):
                self.assertIsNone(await self.scheduler.safe_tick())
        self.assertEqual(self.scheduler.failures, 1)

        self.assertEqual(await self.scheduler.safe_tick(), GameState.COUNTDOWN)

    async def test_loop_survives_failures(self):
        calls = {"n": 0}
        real_tick = self.scheduler.tick

        async def flaky_tick(now=None):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise RuntimeError("transient")
            return await real_tick(now)

        with patch.object(self.scheduler, "tick", flaky_tick):
            await self.scheduler.start()
            for _ in range(100):
                if self.engine.current_round is not None:
                    break
                await asyncio.sleep(0.01)
            await self.scheduler.stop()

        self.assertEqual(self.scheduler.failures, 2)
        self.assertIsNotNone(self.engine.current_round)
        self.assertFalse(self.scheduler.running)

    async def test_start_is_idempotent(self):
        await self.scheduler.start()
        task = self.scheduler._task
        await self.scheduler.start()
        self.assertIs(self.scheduler._task, task)
        await self.scheduler.stop()


if __name__ == "__main__":
    unittest.main(verbosity=2)
