# engine.py
"""
Crash Game Engine – one global round shared by every player

Responsibilities:
- Strict State Machine (COUNTDOWN -> ACTIVE -> CRASHED)
- Per-round Bet Ledger (one bet per player, sweep on crash)
- Single serialization domain (asyncio.Lock) for bets, cash-outs and transitions
- Settlement through an injected SettlementSink (debit / credit / record)

Phase transitions are only ever requested by scheduler.RoundScheduler.
HTTP handlers place bets, cash out, and read status.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from collections import deque
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, getcontext
from typing import Any, Callable, Deque, Dict, List, Optional

from clock import ONE, elapsed_for_multiplier, elapsed_ms, multiplier_at
from outcome import MIN_CRASH, OutcomeGenerator
from settlement import (
    GameResultRecord,
    InsufficientFunds,
    Outcome,
    SettlementSink,
)
from utils import epoch_ms, format_multiplier, to_cents

# Ensure high precision for internal calculations
getcontext().prec = 50

logger = logging.getLogger("crash.engine")

ZERO = Decimal("0.00")

# =========================
# CONFIGURATION
# =========================

@dataclass(frozen=True)
class GameConfig:
    # --- ROUND TIMING ---
    countdown_ms: int = 5000        # betting window before take-off
    cooldown_ms: int = 3000         # pause between crash and next countdown
    tick_interval_ms: int = 50      # scheduler heartbeat

    # --- MULTIPLIER CURVE ---
    # m(t) = 1 + (elapsed_ms / step_ms) * step_growth
    step_ms: int = 50
    step_growth: Decimal = Decimal("0.01")

    # --- PROBABILITY ---
    # crash = -ln(U) / crash_rate, clamped to [1.00, max_multiplier]
    crash_rate: float = 0.5
    max_multiplier: Decimal = Decimal("5.86")

    history_size: int = 50
    # result records held for retry while the result log is down
    max_pending_results: int = 10_000

    def __post_init__(self) -> None:
        if self.countdown_ms < 0 or self.cooldown_ms < 0:
            raise ValueError("countdown_ms and cooldown_ms must be >= 0")
        if self.tick_interval_ms <= 0 or self.step_ms <= 0:
            raise ValueError("tick_interval_ms and step_ms must be > 0")
        if self.step_growth <= 0:
            raise ValueError("step_growth must be > 0")
        if self.crash_rate <= 0:
            raise ValueError("crash_rate must be > 0")
        if self.max_multiplier < MIN_CRASH:
            raise ValueError("max_multiplier must be >= 1.00")
        if self.history_size <= 0:
            raise ValueError("history_size must be > 0")
        if self.max_pending_results <= 0:
            raise ValueError("max_pending_results must be > 0")

    @classmethod
    def from_env(cls) -> "GameConfig":
        return cls(
            countdown_ms=int(os.getenv("CRASH_COUNTDOWN_MS", "5000")),
            cooldown_ms=int(os.getenv("CRASH_COOLDOWN_MS", "3000")),
            tick_interval_ms=int(os.getenv("CRASH_TICK_MS", "50")),
            step_ms=int(os.getenv("CRASH_STEP_MS", "50")),
            step_growth=Decimal(os.getenv("CRASH_STEP_GROWTH", "0.01")),
            crash_rate=float(os.getenv("CRASH_RATE", "0.5")),
            max_multiplier=Decimal(os.getenv("CRASH_MAX_MULTIPLIER", "5.86")),
            history_size=int(os.getenv("CRASH_HISTORY_SIZE", "50")),
            max_pending_results=int(os.getenv("CRASH_MAX_PENDING_RESULTS", "10000")),
        )

# =========================
# ENUMS & EXCEPTIONS
# =========================

class GameState(str, Enum):
    COUNTDOWN = "countdown"  # Accepting bets
    ACTIVE = "active"        # Multiplier rising
    CRASHED = "crashed"      # Round ended, cooldown running


class RejectReason(str, Enum):
    BETTING_CLOSED = "betting_closed"
    INVALID_AMOUNT = "invalid_amount"
    DUPLICATE_BET = "duplicate_bet"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ALREADY_CASHED_OUT = "already_cashed_out"
    ROUND_NOT_ACTIVE = "round_not_active"


class EngineError(Exception):
    """Base engine error"""

class StateError(EngineError):
    """Action performed in invalid state"""

class BetError(EngineError):
    """Invalid bet parameters"""


class BetRejected(BetError):
    """Bet or cash-out refused before any state was touched."""

    def __init__(self, reason: RejectReason, detail: str, round_id: Optional[int] = None) -> None:
        super().__init__(detail)
        self.reason = reason
        self.round_id = round_id


class BetNotFound(BetError):
    def __init__(self, user_id: str, round_id: Optional[int] = None) -> None:
        super().__init__(f"No bet found for {user_id} in round {round_id}")
        self.user_id = user_id
        self.round_id = round_id

# =========================
# DOMAIN MODELS
# =========================

@dataclass
class Bet:
    user_id: str
    amount: Decimal
    placed_at: float = field(default_factory=time.time)

    # Outcome
    cashed_out: bool = False
    cashout_multiplier: Optional[Decimal] = None
    payout: Decimal = ZERO
    settled: bool = False   # swept as a loss

    @property
    def is_open(self) -> bool:
        return not self.cashed_out and not self.settled

    def mark_cashed_out(self, multiplier: Decimal, payout: Decimal) -> None:
        if not self.is_open:
            raise BetError("Bet already settled")
        self.cashed_out = True
        self.cashout_multiplier = multiplier
        self.payout = payout

    def mark_lost(self) -> None:
        if not self.is_open:
            raise BetError("Bet already settled")
        self.settled = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "amount": float(self.amount),
            "cashed_out": self.cashed_out,
            "payout": float(self.payout),
            "multiplier": float(self.cashout_multiplier) if self.cashout_multiplier else None
        }


class BetLedger:
    """
    participant -> Bet for a single round.
    A fresh ledger is allocated per round and dropped with it.
    """

    def __init__(self) -> None:
        self._bets: Dict[str, Bet] = {}

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._bets

    def __len__(self) -> int:
        return len(self._bets)

    def get(self, user_id: Optional[str]) -> Optional[Bet]:
        if user_id is None:
            return None
        return self._bets.get(user_id)

    def add(self, bet: Bet) -> None:
        if bet.user_id in self._bets:
            raise BetError("Double bet detected")
        self._bets[bet.user_id] = bet

    def open_bets(self) -> List[Bet]:
        return [b for b in self._bets.values() if b.is_open]

    def sweep(self) -> List[Bet]:
        """Marks every open bet as lost and returns them."""
        losers = self.open_bets()
        for bet in losers:
            bet.mark_lost()
        return losers

    def total_staked(self) -> Decimal:
        return sum((b.amount for b in self._bets.values()), ZERO)


@dataclass
class GameRound:
    """
    One round and its legal transitions:
        COUNTDOWN --begin_flight--> ACTIVE --crash--> CRASHED
    Anything else raises StateError.
    """
    round_id: int
    crash_point: Decimal
    countdown_start: float
    countdown_ms: int

    state: GameState = GameState.COUNTDOWN
    active_start: Optional[float] = None
    crash_at: Optional[float] = None
    ledger: BetLedger = field(default_factory=BetLedger)

    @property
    def scheduled_start(self) -> float:
        """Instant the countdown ends. Also becomes active_start."""
        return self.countdown_start + self.countdown_ms / 1000

    def betting_open(self, now: float) -> bool:
        return self.state == GameState.COUNTDOWN and now < self.scheduled_start

    def multiplier(self, now: float, config: GameConfig) -> Decimal:
        if self.state == GameState.CRASHED:
            return self.crash_point
        if self.state == GameState.ACTIVE:
            return multiplier_at(elapsed_ms(self.active_start, now), config, self.crash_point)
        return ONE

    def has_reached_crash(self, now: float, config: GameConfig) -> bool:
        return self.state == GameState.ACTIVE and self.multiplier(now, config) >= self.crash_point

    def cooldown_over(self, now: float, config: GameConfig) -> bool:
        return (
            self.state == GameState.CRASHED
            and now >= self.crash_at + config.cooldown_ms / 1000
        )

    def begin_flight(self, now: float) -> None:
        if self.state != GameState.COUNTDOWN:
            raise StateError(f"Cannot start flight from {self.state.value}")
        if now < self.scheduled_start:
            raise StateError("Countdown still running")
        self.state = GameState.ACTIVE
        # The boundary, not `now`: a late tick must not shift the curve.
        self.active_start = self.scheduled_start

    def crash(self, config: GameConfig) -> None:
        if self.state != GameState.ACTIVE:
            raise StateError(f"Cannot crash from {self.state.value}")
        self.state = GameState.CRASHED
        reach_ms = elapsed_for_multiplier(self.crash_point, config)
        self.crash_at = self.active_start + float(reach_ms) / 1000


@dataclass(frozen=True)
class BetReceipt:
    round_id: int
    user_id: str
    amount: Decimal
    balance: Decimal
    status: str = "accepted"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "round_id": self.round_id,
            "amount": float(self.amount),
            "new_balance": float(self.balance),
        }


@dataclass(frozen=True)
class CashoutResult:
    outcome: str                       # "win" | "lose"
    round_id: int
    user_id: str
    multiplier: Decimal = ZERO
    payout: Decimal = ZERO
    balance: Optional[Decimal] = None
    reason: Optional[str] = None
    crash_point: Optional[Decimal] = None

    @property
    def won(self) -> bool:
        return self.outcome == "win"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "result": self.outcome,
            "round_id": self.round_id,
            "multiplier": float(self.multiplier),
            "payout": float(self.payout),
        }
        if self.won:
            data["message"] = f"Cashed out at {format_multiplier(self.multiplier)}!"
            data["balance"] = float(self.balance) if self.balance is not None else None
        else:
            data["message"] = "Crashed before cash out!"
            data["reason"] = self.reason
            data["crash_point"] = float(self.crash_point) if self.crash_point is not None else None
        return data

# =========================
# ENGINE CLASS
# =========================

class CrashGameEngine:
    """
    Owns the current GameRound. Every mutation goes through self._lock, so a
    cash-out and the crash sweep for the same bet can never both settle it.
    """

    def __init__(
        self,
        sink: SettlementSink,
        config: Optional[GameConfig] = None,
        crash_point_source: Optional[Callable[[], Decimal]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sink = sink
        self.config = config or GameConfig()
        self._next_crash_point = crash_point_source or OutcomeGenerator(self.config)
        self._clock = clock

        self._lock = asyncio.Lock()
        self._round: Optional[GameRound] = None
        self._round_ids = itertools.count(1)
        self._history: Deque[Decimal] = deque(maxlen=self.config.history_size)
        self._pending_results: Deque[GameResultRecord] = deque()

    def now(self) -> float:
        return self._clock()

    @property
    def current_round(self) -> Optional[GameRound]:
        return self._round

    @property
    def pending_results(self) -> int:
        return len(self._pending_results)

    # =====================================================
    # LIFECYCLE (driven by RoundScheduler)
    # =====================================================

    async def start_new_round(self, now: Optional[float] = None) -> GameRound:
        """
        (none)/CRASHED -> COUNTDOWN with a fresh crash point and empty ledger.
        """
        async with self._lock:
            now = self.now() if now is None else now
            if self._round and self._round.state != GameState.CRASHED:
                raise StateError(f"Round {self._round.round_id} still {self._round.state.value}")

            crash_point = to_cents(self._next_crash_point())
            crash_point = min(max(crash_point, MIN_CRASH), self.config.max_multiplier)

            self._round = GameRound(
                round_id=next(self._round_ids),
                crash_point=crash_point,
                countdown_start=now,
                countdown_ms=self.config.countdown_ms,
            )
            logger.info(f"Round {self._round.round_id} created, countdown {self.config.countdown_ms}ms")
            return self._round

    async def activate(self, now: Optional[float] = None) -> bool:
        """COUNTDOWN -> ACTIVE once the countdown boundary has passed."""
        async with self._lock:
            now = self.now() if now is None else now
            rnd = self._round
            if not rnd or rnd.state != GameState.COUNTDOWN or now < rnd.scheduled_start:
                return False

            rnd.begin_flight(now)
            logger.info(
                f"Round {rnd.round_id} active with {len(rnd.ledger)} bet(s), "
                f"{rnd.ledger.total_staked()} staked"
            )
            return True

    async def crash(self, now: Optional[float] = None) -> List[Bet]:
        """
        ACTIVE -> CRASHED once the curve reaches the crash point, then sweep.
        Returns the bets settled as losses.
        """
        async with self._lock:
            now = self.now() if now is None else now
            rnd = self._round
            if not rnd or not rnd.has_reached_crash(now, self.config):
                return []

            rnd.crash(self.config)
            self._history.appendleft(rnd.crash_point)

            losers = rnd.ledger.sweep()
            for bet in losers:
                await self._record(
                    GameResultRecord(
                        user_id=bet.user_id,
                        stake=bet.amount,
                        multiplier=ZERO,
                        payout=ZERO,
                        outcome=Outcome.LOSS,
                        round_id=rnd.round_id,
                    )
                )

            logger.info(
                f"Round {rnd.round_id} crashed at {format_multiplier(rnd.crash_point)}, "
                f"{len(losers)} loss(es) swept"
            )
            return losers

    async def _record(self, record: GameResultRecord) -> None:
        """Result logging never blocks settlement; failures are queued."""
        try:
            await self.sink.record_result(record)
        except Exception:
            logger.exception(
                f"Failed to record {record.outcome.value} for {record.user_id} "
                f"(round {record.round_id}), will retry"
            )
            self._queue_result(record)

    def _queue_result(self, record: GameResultRecord) -> None:
        if len(self._pending_results) >= self.config.max_pending_results:
            dropped = self._pending_results.popleft()
            logger.error(
                f"Pending result queue full ({self.config.max_pending_results}), dropping "
                f"{dropped.outcome.value} for {dropped.user_id} (round {dropped.round_id})"
            )
        self._pending_results.append(record)

    async def flush_pending_results(self) -> int:
        """Retries queued result records. Returns how many went through."""
        if not self._pending_results:
            return 0
        batch, self._pending_results = self._pending_results, deque()
        for record in batch:
            await self._record(record)
        flushed = len(batch) - len(self._pending_results)
        if flushed:
            logger.info(f"Flushed {flushed} pending result record(s)")
        return flushed

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    async def place_bet(self, user_id: str, amount: Any) -> BetReceipt:
        """
        Countdown-only. The stake is debited before the bet is inserted, so a
        player can never have more riding than they own.
        """
        try:
            amount_dec = to_cents(amount)
        except (ValueError, ArithmeticError):
            amount_dec = ZERO

        async with self._lock:
            now = self.now()
            rnd = self._round
            round_id = rnd.round_id if rnd else None

            if amount_dec <= 0:
                raise BetRejected(RejectReason.INVALID_AMOUNT, "Bet must be positive", round_id)

            if not rnd or not rnd.betting_open(now):
                state = rnd.state.value if rnd else "offline"
                cur = rnd.multiplier(now, self.config) if rnd else ONE
                raise BetRejected(
                    RejectReason.BETTING_CLOSED,
                    f"Round in progress (Status: {state}, {format_multiplier(cur)})",
                    round_id,
                )

            if user_id in rnd.ledger:
                raise BetRejected(RejectReason.DUPLICATE_BET, "You already have a bet in this round", round_id)

            try:
                balance = await self.sink.debit(
                    user_id,
                    amount_dec,
                    round_id=round_id,
                    reference="crash_bet",
                )
            except InsufficientFunds as e:
                raise BetRejected(RejectReason.INSUFFICIENT_FUNDS, "Insufficient balance", round_id) from e

            rnd.ledger.add(Bet(user_id=user_id, amount=amount_dec, placed_at=now))
            logger.info(f"Round {round_id}: {user_id} bet {amount_dec}")

            return BetReceipt(round_id=round_id, user_id=user_id, amount=amount_dec, balance=balance)

    async def cashout(self, user_id: str) -> CashoutResult:
        """
        Locks in the server-side multiplier. Arriving at or after the crash
        instant is a normal loss ("too_late"), not an error.
        """
        async with self._lock:
            now = self.now()
            rnd = self._round
            bet = rnd.ledger.get(user_id) if rnd else None
            if bet is None:
                raise BetNotFound(user_id, rnd.round_id if rnd else None)

            if bet.cashed_out:
                raise BetRejected(RejectReason.ALREADY_CASHED_OUT, "Already cashed out", rnd.round_id)

            if rnd.state == GameState.CRASHED or bet.settled:
                return self._too_late(rnd, user_id)

            if rnd.state != GameState.ACTIVE:
                raise BetRejected(RejectReason.ROUND_NOT_ACTIVE, "Round not active", rnd.round_id)

            # Server is the authority; the sweep records the loss if we are late.
            mult = rnd.multiplier(now, self.config)
            if mult >= rnd.crash_point:
                return self._too_late(rnd, user_id)

            payout = to_cents(bet.amount * mult)
            balance = await self.sink.credit(
                user_id,
                payout,
                round_id=rnd.round_id,
                reference=f"win_{format_multiplier(mult)}",
            )
            bet.mark_cashed_out(mult, payout)

            await self._record(
                GameResultRecord(
                    user_id=user_id,
                    stake=bet.amount,
                    multiplier=mult,
                    payout=payout,
                    outcome=Outcome.WIN,
                    round_id=rnd.round_id,
                )
            )
            logger.info(f"Round {rnd.round_id}: {user_id} cashed out at {format_multiplier(mult)} for {payout}")

            return CashoutResult(
                outcome="win",
                round_id=rnd.round_id,
                user_id=user_id,
                multiplier=mult,
                payout=payout,
                balance=balance,
            )

    def _too_late(self, rnd: GameRound, user_id: str) -> CashoutResult:
        logger.info(f"Round {rnd.round_id}: {user_id} cash-out too late")
        return CashoutResult(
            outcome="lose",
            round_id=rnd.round_id,
            user_id=user_id,
            reason="too_late",
            crash_point=rnd.crash_point,
        )

    # =====================================================
    # READS (lock-free, side-effect free)
    # =====================================================

    def get_status(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        High-frequency polling snapshot. Synchronous, so it runs atomically on
        the event loop and never waits on the lock.
        """
        now = self.now()
        rnd = self._round
        if rnd is None:
            return {
                "round_id": None,
                "status": "offline",
                "multiplier": 1.00,
                "crash_point": None,
                "server_time": epoch_ms(now),
            }

        mult = rnd.multiplier(now, self.config)
        bet = rnd.ledger.get(user_id)

        if rnd.state == GameState.COUNTDOWN:
            flight_ms = 0
        else:
            end = rnd.crash_at if rnd.state == GameState.CRASHED else now
            flight_ms = int(elapsed_ms(rnd.active_start, end))

        return {
            "round_id": rnd.round_id,
            "status": rnd.state.value,
            "multiplier": float(mult),
            "crash_point": float(rnd.crash_point) if rnd.state == GameState.CRASHED else None,
            "has_bet": bet is not None,
            "cashed_out": bool(bet and bet.cashed_out),
            "cashed_out_at": float(bet.cashout_multiplier) if bet and bet.cashout_multiplier else None,
            "bet": bet.to_dict() if bet else None,
            "countdown_start": epoch_ms(rnd.countdown_start),
            "active_start": epoch_ms(rnd.active_start or rnd.scheduled_start),
            "elapsed_ms": flight_ms,
            "players": len(rnd.ledger),
            "server_time": epoch_ms(now),
        }

    def history(self, limit: int = 10) -> List[float]:
        """Most recent crash points, newest first."""
        return [float(x) for x in list(self._history)[:max(limit, 0)]]
