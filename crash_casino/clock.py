# clock.py
"""
Round Clock – time -> multiplier.

Everything here is a pure function of its arguments. Two pollers reading at
the same instant always see the same multiplier, and nothing needs a lock.

Curve (linear):
    m(t) = 1 + (elapsed_ms / STEP_MS) * STEP_GROWTH
With the defaults (50ms, 0.01) the multiplier climbs 0.20x per second.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING
from typing import Optional, TYPE_CHECKING

from utils import to_cents, to_decimal

if TYPE_CHECKING:
    from engine import GameConfig

ONE = Decimal("1.00")


def elapsed_ms(start: Optional[float], now: float) -> Decimal:
    """Milliseconds between two epoch-second timestamps, never negative."""
    if start is None:
        return Decimal(0)
    delta = round((now - start) * 1000, 3)
    if delta <= 0:
        return Decimal(0)
    return to_decimal(delta)


def ceiling_for(config: "GameConfig", crash_point: Optional[Decimal] = None) -> Decimal:
    """Upper clamp: the hard ceiling, tightened to the crash point if known."""
    if crash_point is None:
        return config.max_multiplier
    return min(crash_point, config.max_multiplier)


def multiplier_at(
    ms: Decimal,
    config: "GameConfig",
    crash_point: Optional[Decimal] = None,
) -> Decimal:
    """
    Pure function: elapsed time -> multiplier.
    Rounded down to cents, clamped to [1.00, min(crash_point, ceiling)].
    """
    if ms <= 0:
        return ONE

    growth = ONE + (to_decimal(ms) / config.step_ms) * config.step_growth
    mult = to_cents(growth)

    return max(ONE, min(mult, ceiling_for(config, crash_point)))


def elapsed_for_multiplier(multiplier: Decimal, config: "GameConfig") -> Decimal:
    """
    Inverse of the curve: smallest elapsed ms at which multiplier_at() reaches
    `multiplier`. Used to date the crash instant exactly instead of at the
    (late) tick that noticed it.
    """
    if multiplier <= ONE:
        return Decimal(0)
    steps = (multiplier - ONE) / config.step_growth
    return (steps * config.step_ms).to_integral_value(rounding=ROUND_CEILING)
