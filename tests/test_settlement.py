"""
In-memory sink and lobby stats tests.
"""

import unittest
from decimal import Decimal

from settlement import (
    DAY_SECONDS,
    GameResultRecord,
    InMemorySettlementSink,
    Outcome,
    TransactionType,
    summarize_results,
)

NOW = 20_000 * DAY_SECONDS + 3600.0   # 01:00 UTC


def _record(user_id, payout, created_at, outcome=Outcome.WIN, game_type="crash"):
    return GameResultRecord(
        user_id=user_id,
        stake=Decimal("10.00"),
        multiplier=Decimal("1.50") if outcome == Outcome.WIN else Decimal("0.00"),
        payout=Decimal(payout),
        outcome=outcome,
        game_type=game_type,
        created_at=created_at,
    )


class TestSummarizeResults(unittest.TestCase):

    def test_empty(self):
        stats = summarize_results([], now=NOW)
        self.assertEqual(stats["total_won_today"], 0.0)
        self.assertEqual(stats["active_players"], 0)
        self.assertEqual(stats["crash"], {"last_multiplier": None, "players": 0})

    def test_today_starts_at_utc_midnight(self):
        records = [
            _record("a", "15.00", NOW - 60),
            _record("b", "7.50", NOW - 2 * 3600),   # yesterday 23:00
            _record("c", "0.00", NOW - 30, outcome=Outcome.LOSS),
        ]
        stats = summarize_results(records, last_crash=2.35, now=NOW)
        self.assertEqual(stats["total_won_today"], 15.0)
        self.assertEqual(stats["active_players"], 3)
        self.assertEqual(stats["crash"]["last_multiplier"], 2.35)

    def test_players_counted_once_within_a_day(self):
        records = [
            _record("a", "15.00", NOW - 10),
            _record("a", "0.00", NOW - 20, outcome=Outcome.LOSS),
            _record("b", "2.00", NOW - 30, game_type="dice"),
            _record("old", "1.00", NOW - DAY_SECONDS - 1),
        ]
        stats = summarize_results(records, now=NOW)
        self.assertEqual(stats["active_players"], 2)
        self.assertEqual(stats["crash"]["players"], 1)


class TestInMemoryLedger(unittest.IsolatedAsyncioTestCase):

    def test_transaction_types(self):
        self.assertEqual(
            {t.value for t in TransactionType},
            {"bet", "win", "deposit", "withdraw"},
        )

    async def test_recent_transactions_newest_first(self):
        sink = InMemorySettlementSink(starting_balance=Decimal("50.00"))
        await sink.debit("alice", Decimal("10.00"), round_id=3)
        await sink.credit("alice", Decimal("4.00"), tx_type=TransactionType.DEPOSIT)
        await sink.debit("bob", Decimal("1.00"))

        entries = await sink.recent_transactions("alice")
        self.assertEqual([e.type for e in entries], [TransactionType.DEPOSIT, TransactionType.BET])
        self.assertEqual(entries[1].to_dict()["round_id"], 3)
        self.assertEqual(entries[0].to_dict()["balance_after"], 44.0)
        self.assertTrue(entries[0].to_dict()["created_at"].endswith("+00:00"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
