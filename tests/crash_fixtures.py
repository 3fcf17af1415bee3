"""
Shared test doubles for the crash engine tests.
"""

import asyncio
from decimal import Decimal
from typing import Iterable

from settlement import InMemorySettlementSink, SettlementError


class FakeClock:
    """Manually driven epoch-seconds clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def set(self, ts: float) -> float:
        self.now = ts
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class CrashPoints:
    """Crash point source that replays a fixed sequence (last value repeats)."""

    def __init__(self, values: Iterable[str]):
        self.values = [Decimal(v) for v in values]
        self.calls = 0

    def __call__(self) -> Decimal:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        return value


class FlakySink(InMemorySettlementSink):
    """In-memory sink whose operations can be told to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_debit = False
        self.fail_credit = False
        self.fail_records = 0          # number of record_result calls to fail
        self.credit_delay_steps = 0    # event-loop yields inside credit()

    async def debit(self, user_id, amount, **kwargs):
        if self.fail_debit:
            raise SettlementError("debit store down")
        return await super().debit(user_id, amount, **kwargs)

    async def credit(self, user_id, amount, **kwargs):
        if self.fail_credit:
            raise SettlementError("credit store down")
        for _ in range(self.credit_delay_steps):
            await asyncio.sleep(0)
        return await super().credit(user_id, amount, **kwargs)

    async def record_result(self, record):
        if self.fail_records > 0:
            self.fail_records -= 1
            raise SettlementError("result log down")
        await super().record_result(record)
