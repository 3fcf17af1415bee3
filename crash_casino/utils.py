# utils.py
"""
Utility functions for the Crash Casino service

Includes:
- Money & multiplier quantization (Decimal, 2 places)
- Robust Number formatting (Decimal/Float agnostic)
- Epoch helpers for the HTTP layer
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union, Optional

logger = logging.getLogger("crash.utils")

CENT = Decimal("0.01")

NumberType = Union[float, Decimal, int, str]

# =========================
# DECIMAL HELPERS
# =========================

def to_decimal(value: NumberType) -> Decimal:
    """
    Convert API input to Decimal via str() so floats like 0.1 stay 0.1.
    Raises ValueError on garbage.
    """
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a number: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return d


def to_cents(value: NumberType) -> Decimal:
    """Quantize to 2 decimals, always rounding down (house side)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


# =========================
# FORMATTING
# =========================

def format_balance(amount: NumberType) -> str:
    """
    Format balance with 2 decimals.
    Handles float, Decimal, int, or string inputs safely.
    """
    try:
        val = float(amount)
        return f"{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid balance format input: {amount}")
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def format_timestamp(ts: Optional[float] = None) -> str:
    """
    Return ISO formatted UTC timestamp (seconds precision).
    """
    dt = datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else datetime.now(timezone.utc)
    return dt.isoformat(timespec="seconds")


def epoch_ms(ts: Optional[float]) -> Optional[int]:
    """Epoch seconds -> integer milliseconds, as browsers expect."""
    if ts is None:
        return None
    return int(round(ts * 1000))


def now_ms() -> int:
    return epoch_ms(time.time())
