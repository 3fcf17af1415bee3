# scheduler.py
"""
Round Scheduler – the server is the clock.

One background task per process:
    countdown -> active -> crashed (+ sweep) -> cooldown -> next countdown ...

The scheduler is the only caller of the engine's transition methods. A tick
that blows up (settlement sink down, bug, anything) is logged and the loop
carries on at the next heartbeat.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from engine import CrashGameEngine, GameState

logger = logging.getLogger("crash.scheduler")


class RoundScheduler:

    def __init__(self, engine: CrashGameEngine, tick_interval_ms: Optional[int] = None) -> None:
        self.engine = engine
        self.tick_interval = (tick_interval_ms or engine.config.tick_interval_ms) / 1000
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    async def start(self) -> None:
        """Start the game loop"""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run(), name="crash-round-scheduler")
        logger.info(f"Round scheduler started ({self.tick_interval * 1000:.0f}ms tick)")

    async def stop(self) -> None:
        """Stop the game loop"""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Round scheduler stopped")

    async def _run(self) -> None:
        while self.running:
            await self.safe_tick()
            await asyncio.sleep(self.tick_interval)

    async def safe_tick(self) -> Optional[GameState]:
        try:
            return await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Scheduler tick failed, continuing")
            return None

    async def tick(self, now: Optional[float] = None) -> Optional[GameState]:
        """
        Applies at most one due transition, then retries queued result records.
        Returns the phase entered, or None if nothing changed.
        """
        self.ticks += 1
        engine = self.engine
        now = engine.now() if now is None else now
        rnd = engine.current_round
        entered: Optional[GameState] = None

        if rnd is None:
            await engine.start_new_round(now)
            entered = GameState.COUNTDOWN

        elif rnd.state == GameState.COUNTDOWN:
            if await engine.activate(now):
                entered = GameState.ACTIVE

        elif rnd.state == GameState.ACTIVE:
            if rnd.has_reached_crash(now, engine.config):
                await engine.crash(now)
                entered = GameState.CRASHED

        elif rnd.cooldown_over(now, engine.config):
            await engine.start_new_round(now)
            entered = GameState.COUNTDOWN

        await engine.flush_pending_results()
        return entered
