# outcome.py
"""
Outcome Generator – one crash point per round.

Distribution:
    u ~ Uniform(0, 1]
    x = -ln(u) / CRASH_RATE
    crash_point = min(MAX_MULTIPLIER, max(1.00, round(x, 2)))

CRASH_RATE is the house-edge knob. With the default 0.5 a player cashing
out at 2.00x gets paid in ~37% of rounds (EV ~0.74 per unit staked), and
the 5.86x ceiling caps the tail.
"""

from __future__ import annotations

import math
import random
import secrets
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, TYPE_CHECKING

from utils import CENT, to_decimal

if TYPE_CHECKING:
    from engine import GameConfig

MIN_CRASH = Decimal("1.00")


def generate_crash_point(config: "GameConfig", rng: Optional[random.Random] = None) -> Decimal:
    """
    Draws a single crash point. Every call is independent.
    """
    rng = rng or secrets.SystemRandom()

    # random() is [0, 1); flip it so ln() never sees 0
    u = 1.0 - rng.random()
    raw = -math.log(u) / config.crash_rate

    crash_point = to_decimal(raw).quantize(CENT, rounding=ROUND_HALF_UP)
    crash_point = max(crash_point, MIN_CRASH)
    crash_point = min(crash_point, config.max_multiplier)

    return crash_point


class OutcomeGenerator:
    """Callable wrapper so the engine can take any `() -> Decimal` source."""

    def __init__(self, config: "GameConfig", rng: Optional[random.Random] = None) -> None:
        self.config = config
        self.rng = rng or secrets.SystemRandom()

    def __call__(self) -> Decimal:
        return generate_crash_point(self.config, self.rng)


# =========================
# THEORY (used by tests and for tuning the rate)
# =========================

def survival_probability(target: float, config: "GameConfig") -> float:
    """
    P(crash_point >= target).

    Rounding half-up to cents means the draw only needs to reach
    target - 0.005. Anything above the ceiling never happens.
    """
    target = float(target)
    if target <= float(MIN_CRASH):
        return 1.0
    if target > float(config.max_multiplier):
        return 0.0
    return math.exp(-config.crash_rate * (target - 0.005))


def expected_return(target: float, config: "GameConfig") -> float:
    """EV per unit staked for a player who always cashes out at `target`."""
    return float(target) * survival_probability(target, config)
