# app.py
"""
Crash Casino – Production Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Global crash round API (bet / cash out / status / history)
- Wallet, transaction, results & stats endpoints backed by the Settlement Sink
- Background RoundScheduler + optional Telegram bot in the lifespan

Integration:
- Uses engine.py (Decimal, Async, State Machine)
- Uses scheduler.py (the only writer of round phases)
- Uses db.py (SQL Settlement Sink)
"""

from __future__ import annotations

import os
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import (
    FastAPI,
    Depends,
    Query,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from engine import (
    BetNotFound,
    BetRejected,
    CrashGameEngine,
    GameConfig,
    RejectReason,
    StateError,
)
from scheduler import RoundScheduler
from settlement import (
    InsufficientFunds,
    SettlementError,
    SettlementSink,
    TransactionType,
    summarize_results,
)
from db import init_db, SqlSettlementSink
from utils import format_balance, now_ms

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crash.app")

BOT_TOKEN = os.getenv("BOT_TOKEN", "")
BASE_URL = os.getenv("BASE_URL", "https://your-app.onrender.com")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# results scanned for /api/stats
STATS_WINDOW = int(os.getenv("STATS_WINDOW", "1000"))

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)

class BetRequest(UserRequest):
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally

class CashoutRequest(UserRequest):
    pass

class WalletRequest(UserRequest):
    amount: float = Field(..., gt=0)

class WithdrawRequest(WalletRequest):
    address: Optional[str] = Field(None, max_length=128)

# =====================================================
# GAME OBJECTS
# =====================================================

sink = SqlSettlementSink()
engine = CrashGameEngine(sink=sink, config=GameConfig.from_env())
scheduler = RoundScheduler(engine)


def get_engine() -> CrashGameEngine:
    return engine


def get_sink() -> SettlementSink:
    return sink

# =====================================================
# LIFECYCLE
# =====================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    logger.info("Startup: Initializing Database...")
    await init_db()

    logger.info("Startup: Launching round scheduler...")
    await scheduler.start()

    bot = None
    if BOT_TOKEN:
        logger.info("Startup: Launching Telegram Bot...")
        bot = await run_telegram_bot()

    yield

    logger.info("Shutdown: Cleaning up...")
    await scheduler.stop()
    if bot is not None:
        await stop_telegram_bot(bot)

# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="Crash Casino API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================

_REJECT_STATUS = {
    RejectReason.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    RejectReason.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
}

@app.exception_handler(BetRejected)
async def bet_rejected_handler(_, exc: BetRejected):
    return JSONResponse(
        status_code=_REJECT_STATUS.get(exc.reason, status.HTTP_409_CONFLICT),
        content={
            "error": "Bet rejected",
            "reason": exc.reason.value,
            "round_id": exc.round_id,
            "detail": str(exc),
        },
    )

@app.exception_handler(BetNotFound)
async def bet_not_found_handler(_, exc: BetNotFound):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "No bet found for this round", "round_id": exc.round_id},
    )

@app.exception_handler(StateError)
async def state_error_handler(_, exc: StateError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "Game State Conflict", "detail": str(exc)},
    )

@app.exception_handler(InsufficientFunds)
async def insufficient_funds_handler(_, exc: InsufficientFunds):
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={"error": "Insufficient balance", "balance": float(exc.balance)},
    )

@app.exception_handler(SettlementError)
async def settlement_error_handler(_, exc: SettlementError):
    logger.error(f"Settlement failure: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Balance service unavailable", "detail": str(exc)},
    )

@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Value Error", "detail": str(exc)},
    )

# =====================================================
# API – HEALTH
# =====================================================

@app.get("/health")
async def health():
    return {"ok": True, "server_time": now_ms()}

# =====================================================
# API – USER & WALLET
# =====================================================

@app.post("/api/init")
async def api_init(payload: UserRequest, sink: SettlementSink = Depends(get_sink)):
    """
    Initialize user session and fetch balance.
    """
    balance = await sink.get_balance(payload.user_id)
    return {"user_id": payload.user_id, "balance": float(balance)}


@app.get("/api/balance")
async def api_balance(
    user_id: str = Query(..., min_length=1, max_length=64),
    sink: SettlementSink = Depends(get_sink),
):
    balance = await sink.get_balance(user_id)
    return {"user_id": user_id, "balance": float(balance)}


@app.post("/api/wallet/deposit")
async def api_deposit(payload: WalletRequest, sink: SettlementSink = Depends(get_sink)):
    new_balance = await sink.credit(
        payload.user_id,
        payload.amount,
        reference="wallet_deposit",
        tx_type=TransactionType.DEPOSIT,
    )
    logger.info(f"Deposit {format_balance(payload.amount)} for {payload.user_id}")
    return {"success": True, "new_balance": float(new_balance), "message": "Deposit successful"}


@app.post("/api/wallet/withdraw")
async def api_withdraw(payload: WithdrawRequest, sink: SettlementSink = Depends(get_sink)):
    new_balance = await sink.debit(
        payload.user_id,
        payload.amount,
        reference=f"wallet_withdraw:{payload.address}" if payload.address else "wallet_withdraw",
        tx_type=TransactionType.WITHDRAW,
    )
    logger.info(f"Withdraw {format_balance(payload.amount)} for {payload.user_id}")
    return {"success": True, "new_balance": float(new_balance), "message": "Withdrawal successful"}


@app.get("/api/transactions")
async def api_transactions(
    user_id: str = Query(..., min_length=1, max_length=64),
    limit: int = Query(20, ge=1, le=100),
    sink: SettlementSink = Depends(get_sink),
) -> List[Dict[str, Any]]:
    """
    Wallet history, newest first.
    """
    entries = await sink.recent_transactions(user_id, limit=limit)
    return [e.to_dict() for e in entries]

# =====================================================
# API – CRASH ROUND
# =====================================================

@app.post("/api/games/crash/bet")
async def api_place_bet(payload: BetRequest, engine: CrashGameEngine = Depends(get_engine)):
    """
    Joins the current round. Countdown only; the stake is debited up front.
    """
    receipt = await engine.place_bet(payload.user_id, payload.amount)
    return receipt.to_dict()


@app.post("/api/games/crash/cashout")
async def api_cashout(payload: CashoutRequest, engine: CrashGameEngine = Depends(get_engine)):
    """
    Engine is the authority on the multiplier and payout.
    A late request comes back as a normal "lose" result.
    """
    result = await engine.cashout(payload.user_id)
    return result.to_dict()


@app.get("/api/games/crash/status")
async def api_status(
    user_id: Optional[str] = Query(None, max_length=64),
    engine: CrashGameEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    High-frequency polling endpoint for game state.
    """
    return engine.get_status(user_id)


@app.get("/api/games/crash/history")
async def api_history(
    limit: int = Query(10, ge=1, le=50),
    engine: CrashGameEngine = Depends(get_engine),
):
    return {"crashes": engine.history(limit)}


@app.get("/api/games/recent")
async def api_recent(
    game_type: Optional[str] = Query(None, max_length=32),
    user_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(10, ge=1, le=100),
    sink: SettlementSink = Depends(get_sink),
) -> List[Dict[str, Any]]:
    records = await sink.recent_results(game_type=game_type, user_id=user_id, limit=limit)
    return [r.to_dict() for r in records]


@app.get("/api/stats")
async def api_stats(
    engine: CrashGameEngine = Depends(get_engine),
    sink: SettlementSink = Depends(get_sink),
) -> Dict[str, Any]:
    records = await sink.recent_results(limit=STATS_WINDOW)
    last = engine.history(1)
    return summarize_results(records, last_crash=last[0] if last else None)

# =====================================================
# TELEGRAM BOT (OPTIONAL)
# =====================================================

async def run_telegram_bot():
    """
    Starts the Telegram bot in the background and returns the application.
    """
    from telegram import KeyboardButton, ReplyKeyboardMarkup, Update, WebAppInfo
    from telegram.ext import (
        ApplicationBuilder,
        CommandHandler,
        ContextTypes,
    )

    async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not update.message:
            return

        await update.message.reply_text(
            "🚀 *Crash Casino*\n\nBet during the countdown, cash out before it crashes.",
            parse_mode="Markdown",
            reply_markup=ReplyKeyboardMarkup(
                [[KeyboardButton("▶️ Play Now", web_app=WebAppInfo(url=BASE_URL))]],
                resize_keyboard=True,
            ),
        )

    async def balance(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not update.message or not update.effective_user:
            return
        try:
            amount = await sink.get_balance(str(update.effective_user.id))
        except SettlementError as e:
            logger.error(f"Bot balance lookup failed: {e}")
            await update.message.reply_text("Balance is unavailable right now, try again later.")
            return
        await update.message.reply_text(f"💰 Balance: {format_balance(amount)}")

    try:
        app_bot = ApplicationBuilder().token(BOT_TOKEN).build()
        app_bot.add_handler(CommandHandler("start", start))
        app_bot.add_handler(CommandHandler("balance", balance))

        logger.info("Bot initializing...")
        await app_bot.initialize()
        await app_bot.start()
        await app_bot.updater.start_polling()
        logger.info("Bot polling started.")
        return app_bot

    except Exception as e:
        logger.error(f"Telegram Bot failed to start: {e}")
        return None


async def stop_telegram_bot(app_bot) -> None:
    try:
        await app_bot.updater.stop()
        await app_bot.stop()
        await app_bot.shutdown()
    except Exception as e:
        logger.warning(f"Telegram Bot shutdown error: {e}")
