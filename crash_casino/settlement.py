# settlement.py
"""
Settlement Sink – the engine's only door to money.

The engine never touches balances directly. It asks a sink to:
- debit a stake when a bet is placed
- credit a payout when a bet is cashed out
- append a GameResultRecord for every settled bet

Two sinks ship with the service:
- InMemorySettlementSink (below): process-memory demo store
- db.SqlSettlementSink: SQLAlchemy-backed ledger (production)
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Any

from utils import format_timestamp, to_cents

DEFAULT_STARTING_BALANCE = Decimal("1000.00")

# =====================================================
# ERRORS
# =====================================================

class SettlementError(Exception):
    """Balance store / result log unavailable or failed."""


class InsufficientFunds(Exception):
    """Debit would drive the balance below zero."""

    def __init__(self, user_id: str, balance: Decimal, amount: Decimal) -> None:
        super().__init__(f"Insufficient balance for {user_id}: {balance} < {amount}")
        self.user_id = user_id
        self.balance = balance
        self.amount = amount


# =====================================================
# TYPES
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class Outcome(str, enum.Enum):
    WIN = "win"
    LOSS = "loss"


@dataclass(frozen=True)
class GameResultRecord:
    """One settled bet. Write-only from the engine's point of view."""
    user_id: str
    stake: Decimal
    multiplier: Decimal
    payout: Decimal
    outcome: Outcome
    round_id: Optional[int] = None
    game_type: str = "crash"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "game_type": self.game_type,
            "round_id": self.round_id,
            "bet_amount": float(self.stake),
            "multiplier": float(self.multiplier),
            "payout": float(self.payout),
            "result": self.outcome.value,
            "timestamp": self.created_at,
        }


class SettlementSink(Protocol):

    async def debit(
        self,
        user_id: str,
        amount: Decimal,
        *,
        round_id: Optional[int] = None,
        reference: Optional[str] = None,
        tx_type: TransactionType = TransactionType.BET,
    ) -> Decimal:
        """Returns the new balance, raises InsufficientFunds."""
        ...

    async def credit(
        self,
        user_id: str,
        amount: Decimal,
        *,
        round_id: Optional[int] = None,
        reference: Optional[str] = None,
        tx_type: TransactionType = TransactionType.WIN,
    ) -> Decimal:
        ...

    async def record_result(self, record: GameResultRecord) -> None:
        ...

    async def get_balance(self, user_id: str) -> Decimal:
        ...

    async def recent_results(
        self,
        game_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[GameResultRecord]:
        ...

    async def recent_transactions(self, user_id: str, limit: int = 20) -> List["LedgerEntry"]:
        """Newest first."""
        ...


# =====================================================
# IN-MEMORY SINK
# =====================================================

@dataclass
class LedgerEntry:
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    round_id: Optional[int] = None
    reference: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "amount": float(self.amount),
            "balance_after": float(self.balance_after),
            "round_id": self.round_id,
            "reference": self.reference,
            "created_at": format_timestamp(self.created_at),
        }


class InMemorySettlementSink:
    """
    Dict-backed sink. Users are created lazily with the starting balance.
    Nothing survives a restart.
    """

    def __init__(self, starting_balance: Decimal = DEFAULT_STARTING_BALANCE) -> None:
        self.starting_balance = to_cents(starting_balance)
        self.balances: Dict[str, Decimal] = {}
        self.ledger: List[LedgerEntry] = []
        self.results: List[GameResultRecord] = []
        self._lock = asyncio.Lock()

    def _balance(self, user_id: str) -> Decimal:
        return self.balances.setdefault(user_id, self.starting_balance)

    async def _apply(
        self,
        user_id: str,
        amount: Decimal,
        tx_type: TransactionType,
        round_id: Optional[int],
        reference: Optional[str],
    ) -> Decimal:
        async with self._lock:
            amount = to_cents(amount)
            balance = self._balance(user_id)
            new_balance = balance + amount
            if new_balance < 0:
                raise InsufficientFunds(user_id, balance, -amount)

            self.balances[user_id] = new_balance
            self.ledger.append(
                LedgerEntry(
                    user_id=user_id,
                    type=tx_type,
                    amount=amount,
                    balance_after=new_balance,
                    round_id=round_id,
                    reference=reference,
                )
            )
            return new_balance

    async def debit(self, user_id, amount, *, round_id=None, reference=None,
                    tx_type=TransactionType.BET) -> Decimal:
        return await self._apply(user_id, -abs(amount), tx_type, round_id, reference)

    async def credit(self, user_id, amount, *, round_id=None, reference=None,
                     tx_type=TransactionType.WIN) -> Decimal:
        return await self._apply(user_id, abs(amount), tx_type, round_id, reference)

    async def record_result(self, record: GameResultRecord) -> None:
        self.results.append(record)

    async def get_balance(self, user_id: str) -> Decimal:
        return self._balance(user_id)

    async def recent_results(self, game_type=None, user_id=None, limit=10) -> List[GameResultRecord]:
        rows = [
            r for r in reversed(self.results)
            if (game_type is None or r.game_type == game_type)
            and (user_id is None or r.user_id == user_id)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    async def recent_transactions(self, user_id: str, limit: int = 20) -> List[LedgerEntry]:
        return [e for e in reversed(self.ledger) if e.user_id == user_id][:limit]


# =====================================================
# STATS
# =====================================================

DAY_SECONDS = 24 * 60 * 60


def summarize_results(
    records: List[GameResultRecord],
    last_crash: Optional[float] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Casino-wide numbers for the lobby: payouts won since UTC midnight,
    distinct players over the last 24h, and the crash table's last result.
    """
    now = time.time() if now is None else now
    midnight = now - (now % DAY_SECONDS)
    recent = [r for r in records if r.created_at > now - DAY_SECONDS]

    won_today = sum(
        (r.payout for r in records if r.outcome == Outcome.WIN and r.created_at >= midnight),
        Decimal("0.00"),
    )
    return {
        "total_won_today": float(won_today),
        "active_players": len({r.user_id for r in recent}),
        "crash": {
            "last_multiplier": last_crash,
            "players": len({r.user_id for r in recent if r.game_type == "crash"}),
        },
    }
