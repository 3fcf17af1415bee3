# db.py
"""
Database Layer – SQL-backed Settlement Sink

Responsibilities:
- Async database engine & session lifecycle
- User account persistence (created lazily with a starting balance)
- Ledger-safe balance management (Decimal arithmetic, row locks)
- Append-only game results, linked to engine round ids

The engine only sees SqlSettlementSink through the settlement.SettlementSink
protocol. Database failures surface as SettlementError.
"""

from __future__ import annotations

import os
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Enum,
    ForeignKey,
    func,
    Numeric,
    select,
    update,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from settlement import (
    GameResultRecord,
    InsufficientFunds,
    LedgerEntry,
    Outcome,
    SettlementError,
    TransactionType,
)
from utils import to_cents, to_decimal

logger = logging.getLogger("crash.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crash_casino.db"
)

# Default starting balance for new demo users
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Whatever the client identifies itself with (Telegram id, session id ...)
    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        # not loaded on the async path, ledger reads go through recent_transactions
        lazy="select",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Links financial movement to specific game rounds.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +15.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    round_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )

    # Extra metadata (e.g. "win_x1.50")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    user: Mapped[User] = relationship(back_populates="transactions")


class GameResult(Base):
    """One settled bet. Append-only, never read back by the engine."""

    __tablename__ = "game_results"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    game_type: Mapped[str] = mapped_column(
        String(32),
        index=True,
        nullable=False,
    )

    round_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )

    bet_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payout: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    result: Mapped[Outcome] = mapped_column(
        Enum(Outcome, name="game_outcome"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


# =====================================================
# ENGINE & SESSION
# =====================================================

engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    # SSL is critical for Postgres in production
    connect_args={"ssl": "require"} if "postgresql" in DATABASE_URL else {},
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


# =====================================================
# INIT
# =====================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    external_id: str,
    starting_balance: Decimal = STARTING_BALANCE,
) -> User:
    """
    Fetches a user or creates one with the starting balance.
    """
    result = await session.execute(
        select(User).where(User.external_id == external_id)
    )
    user = result.scalar_one_or_none()

    if user:
        return user

    new_user = User(external_id=external_id, balance=to_cents(starting_balance))
    session.add(new_user)

    try:
        await session.commit()
        await session.refresh(new_user)
        return new_user
    except IntegrityError:
        # Handle race condition where user was created in parallel
        await session.rollback()
        return await get_or_create_user(session, external_id, starting_balance)


async def apply_transaction(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: int | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Atomic balance update + immutable ledger entry. Returns the new balance.
    `amount` is the signed change (negative for debits).

    The overdraft check lives in the UPDATE's WHERE clause, so concurrent
    sessions cannot both spend the same balance (SQLite ignores FOR UPDATE).
    """
    amount_quantized = amount.quantize(Decimal("0.01"))
    new_balance_expr = func.round(User.balance + amount_quantized, 2)

    result = await session.execute(
        update(User)
        .where(User.id == user.id, new_balance_expr >= 0)
        .values(balance=new_balance_expr, updated_at=datetime.now(timezone.utc))
        .returning(User.balance)
        .execution_options(synchronize_session=False)
    )
    row = result.first()

    if row is None:
        await session.rollback()
        raise InsufficientFunds(user.external_id, user.balance, -amount_quantized)

    new_balance = to_cents(row[0])
    session.add(
        Transaction(
            user_id=user.id,
            type=tx_type,
            amount=amount_quantized,
            balance_after=new_balance,
            round_id=round_id,
            reference=reference,
        )
    )
    await session.commit()

    return new_balance


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _to_record(row: GameResult, external_id: str) -> GameResultRecord:
    created = _as_utc(row.created_at) if row.created_at is not None else None
    return GameResultRecord(
        user_id=external_id,
        stake=to_decimal(row.bet_amount),
        multiplier=to_decimal(row.multiplier),
        payout=to_decimal(row.payout),
        outcome=row.result,
        round_id=row.round_id,
        game_type=row.game_type,
        created_at=created.timestamp() if created else 0.0,
    )


# =====================================================
# SETTLEMENT SINK
# =====================================================

class SqlSettlementSink:
    """
    settlement.SettlementSink on top of the tables above.
    One short-lived session per operation.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        starting_balance: Decimal = STARTING_BALANCE,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.starting_balance = starting_balance

    async def _apply(
        self,
        user_id: str,
        amount: Decimal,
        tx_type: TransactionType,
        round_id: Optional[int],
        reference: Optional[str],
    ) -> Decimal:
        try:
            async with self._sessionmaker() as session:
                user = await get_or_create_user(session, user_id, self.starting_balance)
                return await apply_transaction(session, user, amount, tx_type, round_id, reference)
        except SQLAlchemyError as e:
            logger.error(f"{tx_type.value} of {amount} for {user_id} failed: {e}")
            raise SettlementError(f"Balance store unavailable: {e}") from e

    async def debit(self, user_id, amount, *, round_id=None, reference=None,
                    tx_type=TransactionType.BET) -> Decimal:
        return await self._apply(user_id, -abs(to_decimal(amount)), tx_type, round_id, reference)

    async def credit(self, user_id, amount, *, round_id=None, reference=None,
                     tx_type=TransactionType.WIN) -> Decimal:
        return await self._apply(user_id, abs(to_decimal(amount)), tx_type, round_id, reference)

    async def record_result(self, record: GameResultRecord) -> None:
        try:
            async with self._sessionmaker() as session:
                user = await get_or_create_user(session, record.user_id, self.starting_balance)
                session.add(
                    GameResult(
                        user_id=user.id,
                        game_type=record.game_type,
                        round_id=record.round_id,
                        bet_amount=record.stake,
                        multiplier=record.multiplier,
                        payout=record.payout,
                        result=record.outcome,
                        created_at=datetime.fromtimestamp(record.created_at, tz=timezone.utc),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise SettlementError(f"Result log unavailable: {e}") from e

    async def get_balance(self, user_id: str) -> Decimal:
        try:
            async with self._sessionmaker() as session:
                user = await get_or_create_user(session, user_id, self.starting_balance)
                return user.balance
        except SQLAlchemyError as e:
            raise SettlementError(f"Balance store unavailable: {e}") from e

    async def recent_results(
        self,
        game_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[GameResultRecord]:
        stmt = select(GameResult, User.external_id).join(User, GameResult.user_id == User.id)
        if game_type:
            stmt = stmt.where(GameResult.game_type == game_type)
        if user_id:
            stmt = stmt.where(User.external_id == user_id)
        stmt = stmt.order_by(GameResult.id.desc()).limit(limit)

        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise SettlementError(f"Result log unavailable: {e}") from e

        return [_to_record(row, external_id) for row, external_id in rows]

    async def recent_transactions(self, user_id: str, limit: int = 20) -> List[LedgerEntry]:
        stmt = (
            select(Transaction)
            .join(User, Transaction.user_id == User.id)
            .where(User.external_id == user_id)
            .order_by(Transaction.id.desc())
            .limit(limit)
        )
        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise SettlementError(f"Ledger unavailable: {e}") from e

        return [
            LedgerEntry(
                user_id=user_id,
                type=tx.type,
                amount=to_decimal(tx.amount),
                balance_after=to_decimal(tx.balance_after),
                round_id=tx.round_id,
                reference=tx.reference,
                created_at=_as_utc(tx.created_at).timestamp() if tx.created_at else 0.0,
            )
            for tx in rows
        ]
