"""Monthly return generation for the fund position.

Returns are produced as growth *factors* (``1.01`` is a one percent gain).
Three modes exist:

* deterministic growth at the expected monthly rate when ``volatility == 0``;
* geometric Brownian motion with drift correction otherwise, so the expected
  monthly factor equals ``1 + monthly rate`` and factors stay positive;
* a stress scenario that replaces the first years of the withdrawal phase with
  a fixed sequence of annual returns before falling back to the normal mode.

Randomness always comes from an explicit :class:`numpy.random.Generator`
handle so that the same seed reproduces the same path.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from ..config import MONTHS_PER_YEAR, stress_returns


def make_rng(seed: Optional[int] = None) -> np.random.Generator:
    return np.random.default_rng(seed)


def to_monthly_rate(annual_rate: float) -> float:
    """Geometric monthly equivalent of an annual rate."""
    return (1.0 + annual_rate) ** (1.0 / MONTHS_PER_YEAR) - 1.0


def box_muller(rng: np.random.Generator) -> float:
    """Draw one standard normal variate from two uniforms."""
    u1 = rng.random()
    while u1 <= 0.0:
        u1 = rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


class ReturnGenerator:
    """Produces one growth factor per simulated month.

    Parameters
    ----------
    annual_return : float
        Expected annual fund return before fees.
    fee_rate : float
        Annual fee drag subtracted from ``annual_return``.
    volatility : float
        Annualized volatility; ``0`` gives deterministic growth.
    rng : numpy.random.Generator, optional
        Source of randomness; only required when ``volatility > 0``.
    stress : sequence of float, optional
        Annual returns applied to the first withdrawal years.
    accumulation_months : int
        Length of the accumulation phase; stress returns start after it.
    """

    def __init__(
        self,
        annual_return: float,
        fee_rate: float = 0.0,
        volatility: float = 0.0,
        rng: Optional[np.random.Generator] = None,
        stress: Optional[Sequence[float]] = None,
        accumulation_months: int = 0,
    ):
        if volatility < 0:
            raise ValueError("volatility must not be negative")
        if volatility > 0 and rng is None:
            raise ValueError("a random generator is required when volatility > 0")
        self.monthly_rate = to_monthly_rate(annual_return - fee_rate)
        self.monthly_volatility = volatility / math.sqrt(MONTHS_PER_YEAR)
        self.rng = rng
        self.stress = tuple(stress) if stress else ()
        self.accumulation_months = int(accumulation_months)
        self._drift = math.log1p(self.monthly_rate) - 0.5 * self.monthly_volatility ** 2

    @classmethod
    def for_scenario(cls, params, volatility: float = 0.0, rng=None, stress_scenario: Optional[str] = None):
        return cls(
            params.invested_return,
            fee_rate=params.fee_rate,
            volatility=volatility,
            rng=rng,
            stress=stress_returns(stress_scenario),
            accumulation_months=params.accumulation_months,
        )

    def stress_factor(self, month: int) -> Optional[float]:
        """Stress factor for ``month`` (1-based) or ``None`` outside the sequence."""
        if not self.stress or month <= self.accumulation_months:
            return None
        withdrawal_year = (month - self.accumulation_months - 1) // MONTHS_PER_YEAR
        if withdrawal_year >= len(self.stress):
            return None
        return (1.0 + self.stress[withdrawal_year]) ** (1.0 / MONTHS_PER_YEAR)

    def next_factor(self, month: int) -> float:
        stressed = self.stress_factor(month)
        if stressed is not None:
            return stressed
        if self.monthly_volatility > 0:
            z = box_muller(self.rng)
            return math.exp(self._drift + self.monthly_volatility * z)
        return 1.0 + self.monthly_rate
