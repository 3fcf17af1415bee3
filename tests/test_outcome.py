"""
Outcome generator & round clock tests.

The Monte Carlo checks use a seeded RNG so they are deterministic; the
tolerances are several standard errors wide.
"""

import random
import unittest
from decimal import Decimal

from clock import elapsed_for_multiplier, elapsed_ms, multiplier_at
from engine import GameConfig
from outcome import (
    OutcomeGenerator,
    expected_return,
    generate_crash_point,
    survival_probability,
)

N_ROUNDS = 50_000


class _FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__()
        self.value = value

    def random(self):
        return self.value


# ============================================================
# Outcome Generator
# ============================================================

class TestCrashPointBounds(unittest.TestCase):

    def setUp(self):
        self.config = GameConfig()
        self.rng = random.Random(1337)

    def test_always_at_least_one_and_capped(self):
        for _ in range(N_ROUNDS):
            cp = generate_crash_point(self.config, self.rng)
            self.assertGreaterEqual(cp, Decimal("1.00"))
            self.assertLessEqual(cp, Decimal("5.86"))

    def test_two_decimal_places(self):
        for _ in range(1000):
            cp = generate_crash_point(self.config, self.rng)
            self.assertEqual(cp, cp.quantize(Decimal("0.01")))

    def test_custom_ceiling(self):
        config = GameConfig(max_multiplier=Decimal("3.00"))
        draws = [generate_crash_point(config, self.rng) for _ in range(5000)]
        self.assertEqual(max(draws), Decimal("3.00"))

    def test_extremes(self):
        # u == 1 -> x == 0 -> floor of 1.00
        self.assertEqual(generate_crash_point(self.config, _FixedRandom(0.0)), Decimal("1.00"))
        # u -> 0 -> huge x -> ceiling
        self.assertEqual(generate_crash_point(self.config, _FixedRandom(0.999999999)), Decimal("5.86"))

    def test_draws_are_independent(self):
        gen = OutcomeGenerator(self.config, self.rng)
        draws = {gen() for _ in range(200)}
        self.assertGreater(len(draws), 50)

    def test_default_rng_is_system_random(self):
        cp = OutcomeGenerator(self.config)()
        self.assertGreaterEqual(cp, Decimal("1.00"))


class TestHouseEdge(unittest.TestCase):
    """Empirical survival / EV must match the closed form."""

    @classmethod
    def setUpClass(cls):
        cls.config = GameConfig()
        rng = random.Random(20240601)
        cls.draws = [float(generate_crash_point(cls.config, rng)) for _ in range(N_ROUNDS)]

    def test_survival_matches_theory(self):
        for target in (1.01, 1.5, 2.0, 3.0, 5.0, 5.86):
            observed = sum(1 for d in self.draws if d >= target) / N_ROUNDS
            expected = survival_probability(target, self.config)
            self.assertAlmostEqual(observed, expected, delta=0.01, msg=f"target={target}")

    def test_expected_return_matches_theory(self):
        for target in (1.5, 2.0, 3.0):
            payout = sum(target for d in self.draws if d >= target) / N_ROUNDS
            self.assertAlmostEqual(payout, expected_return(target, self.config), delta=0.03)

    def test_house_keeps_an_edge(self):
        for target in (1.1, 1.5, 2.0, 3.0, 4.0, 5.86):
            self.assertLess(expected_return(target, self.config), 1.0)

    def test_survival_edges(self):
        self.assertEqual(survival_probability(1.0, self.config), 1.0)
        self.assertEqual(survival_probability(0.5, self.config), 1.0)
        self.assertEqual(survival_probability(5.87, self.config), 0.0)


# ============================================================
# Round Clock
# ============================================================

class TestRoundClock(unittest.TestCase):

    def setUp(self):
        self.config = GameConfig()

    def test_curve(self):
        self.assertEqual(multiplier_at(Decimal(0), self.config), Decimal("1.00"))
        self.assertEqual(multiplier_at(Decimal(-50), self.config), Decimal("1.00"))
        self.assertEqual(multiplier_at(Decimal(2500), self.config), Decimal("1.50"))
        self.assertEqual(multiplier_at(Decimal(5000), self.config), Decimal("2.00"))
        # between steps rounds down
        self.assertEqual(multiplier_at(Decimal(2549), self.config), Decimal("1.50"))

    def test_clamped_to_crash_point_and_ceiling(self):
        self.assertEqual(multiplier_at(Decimal(60_000), self.config, Decimal("2.00")), Decimal("2.00"))
        self.assertEqual(multiplier_at(Decimal(600_000), self.config), Decimal("5.86"))

    def test_monotonic(self):
        previous = Decimal("1.00")
        for ms in range(0, 30_000, 7):
            current = multiplier_at(Decimal(ms), self.config, Decimal("5.00"))
            self.assertGreaterEqual(current, previous)
            previous = current

    def test_pure(self):
        a = multiplier_at(Decimal("1234.5"), self.config, Decimal("3.00"))
        b = multiplier_at(Decimal("1234.5"), self.config, Decimal("3.00"))
        self.assertEqual(a, b)

    def test_inverse(self):
        self.assertEqual(elapsed_for_multiplier(Decimal("1.00"), self.config), 0)
        self.assertEqual(elapsed_for_multiplier(Decimal("2.00"), self.config), 5000)
        config = GameConfig(step_growth=Decimal("0.03"))
        ms = elapsed_for_multiplier(Decimal("2.00"), config)
        self.assertEqual(multiplier_at(ms, config), Decimal("2.00"))
        self.assertLess(multiplier_at(ms - 1, config), Decimal("2.00"))

    def test_elapsed_ms(self):
        self.assertEqual(elapsed_ms(None, 10.0), 0)
        self.assertEqual(elapsed_ms(10.0, 9.0), 0)
        self.assertEqual(elapsed_ms(1005.0, 1007.5), Decimal("2500"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
