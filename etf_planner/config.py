"""Scenario configuration for the ETF savings planner.

A plan is described by a single immutable :class:`ScenarioParameters` value.
Every field has a documented default, so ``ScenarioParameters()`` is a usable
plan on its own: a 36 year savings phase with cash and fund contributions
followed by a 30 year withdrawal phase paying 1 000 EUR net per month.

Rates are decimals (``0.06`` is six percent per year).  Withdrawals are either
a fixed monthly amount (``monthly_withdrawal``) or an annual fraction of the
wealth at the start of the withdrawal phase (``withdrawal_percent``); exactly
one of the two must be set.

Market tables (historical baseline rates used for the deemed distribution and
the deterministic stress scenarios) are stored in ``data/market_tables.json``.

Example
-------

>>> params = ScenarioParameters.from_preset("fire", inflation_rate=0.025)
>>> params.accumulation_months, params.uses_percent_withdrawal
(300, True)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

MONTHS_PER_YEAR = 12
INITIAL_PRICE = 100.0

BASE_TAX_RATE = 0.25
SOLIDARITY_SURCHARGE = 0.055
DEEMED_RETURN_FACTOR = 0.7

ALLOWANCE_SINGLE = 1000.0
ALLOWANCE_MARRIED = 2000.0

CONSOLIDATION_LOT_LIMIT = 50
CONSOLIDATION_TOLERANCE = 0.01

# Residual amounts below this many euros count as fully covered.
COVERAGE_EPSILON = 0.01

CHURCH_TAX_RATES: Dict[str, float] = {"none": 0.0, "8": 0.08, "9": 0.09}

# Share of a gain that is taxable after the partial exemption for the fund type.
FUND_TYPE_TAXABLE_FRACTION: Dict[str, float] = {
    "equity": 0.7,
    "mixed": 0.85,
    "bond": 1.0,
}

_DEFAULT_MARKET_TABLE_PATH = Path(__file__).resolve().parent / "data" / "market_tables.json"


class ScenarioValidationError(ValueError):
    """Raised when a plan cannot be simulated.

    ``errors`` lists every problem found, not only the first one.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@lru_cache(maxsize=8)
def _read_tables(path: str) -> Dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_market_tables(path: Optional[Path] = None) -> Dict:
    """Load the baseline-rate history and stress scenarios.

    Parameters
    ----------
    path : Path, optional
        JSON file with ``baseline_rates`` and ``stress_scenarios`` keys.  The
        table shipped with the package is used when omitted.

    Returns
    -------
    dict
        The parsed tables.  The result is cached per path and must not be
        mutated.
    """
    p = path or _DEFAULT_MARKET_TABLE_PATH
    return _read_tables(str(p))


def baseline_rate_for_year(year: int, fallback: float, tables: Optional[Dict] = None) -> float:
    """Published baseline rate for ``year`` or ``fallback`` when unknown."""
    rates = (tables or load_market_tables())["baseline_rates"]
    return float(rates.get(str(year), fallback))


def stress_scenario_names(tables: Optional[Dict] = None) -> List[str]:
    return ["none"] + sorted((tables or load_market_tables())["stress_scenarios"])


def stress_returns(name: Optional[str], tables: Optional[Dict] = None) -> Optional[Tuple[float, ...]]:
    """Annual returns of a stress scenario, ``None`` for the normal mode.

    Raises
    ------
    ScenarioValidationError
        If the scenario name is unknown.
    """
    if not name or name == "none":
        return None
    scenarios = (tables or load_market_tables())["stress_scenarios"]
    if name not in scenarios:
        raise ScenarioValidationError([f"unknown stress scenario: {name!r}"])
    return tuple(float(r) for r in scenarios[name]["returns"])


@dataclass(frozen=True)
class ScenarioParameters:
    """All inputs of one savings and withdrawal plan."""

    # starting position
    start_cash: float = 4000.0
    start_invested: float = 100.0
    # 0 means the starting fund position was bought at its current value
    start_cost_basis: float = 0.0

    # market assumptions
    cash_rate: float = 0.03
    invested_return: float = 0.06
    fee_rate: float = 0.002
    inflation_rate: float = 0.02

    # accumulation phase
    cash_target: float = 5000.0
    accumulation_years: int = 36
    monthly_cash_contribution: float = 100.0
    monthly_invested_contribution: float = 150.0
    annual_raise: float = 0.03
    special_expense_accumulation: float = 15000.0
    special_expense_accumulation_interval: int = 10
    special_expense_accumulation_inflation: bool = True

    # withdrawal phase
    withdrawal_years: int = 30
    monthly_withdrawal: Optional[float] = 1000.0
    withdrawal_percent: Optional[float] = None
    withdrawal_min: float = 0.0
    withdrawal_max: float = 0.0
    withdrawal_is_gross: bool = False
    inflation_adjust_withdrawal: bool = True
    special_expense_withdrawal: float = 15000.0
    special_expense_withdrawal_interval: int = 10
    special_expense_withdrawal_inflation: bool = True

    # capital preservation
    capital_preservation_enabled: bool = False
    capital_preservation_threshold: float = 0.80
    capital_preservation_reduction: float = 0.25
    capital_preservation_recovery: float = 0.10

    # taxes
    annual_allowance: float = ALLOWANCE_SINGLE
    church_tax: str = "none"
    fund_type: str = "equity"
    baseline_rate: float = 0.0253
    use_lifo: bool = False
    initial_loss_pot: float = 0.0
    # wrappers taxed only on payout (company pension contracts) pay nothing while saving
    tax_exempt: bool = False

    initial_price: float = INITIAL_PRICE

    # ------------------------------------------------------------------
    @property
    def accumulation_months(self) -> int:
        return int(self.accumulation_years) * MONTHS_PER_YEAR

    @property
    def withdrawal_months(self) -> int:
        return int(self.withdrawal_years) * MONTHS_PER_YEAR

    @property
    def total_months(self) -> int:
        return self.accumulation_months + self.withdrawal_months

    @property
    def uses_percent_withdrawal(self) -> bool:
        return self.withdrawal_percent is not None

    @property
    def monthly_budget(self) -> float:
        """Combined monthly saving (cash plus fund)."""
        return self.monthly_cash_contribution + self.monthly_invested_contribution

    @property
    def taxable_fraction(self) -> float:
        return FUND_TYPE_TAXABLE_FRACTION[self.fund_type]

    # ------------------------------------------------------------------
    def validate(self) -> List[str]:
        """Return a list of problems; an empty list means the plan is valid."""
        errors: List[str] = []
        if self.accumulation_years < 0 or self.withdrawal_years < 0:
            errors.append("phase lengths must not be negative")
        elif self.total_months == 0:
            errors.append("the plan must cover at least one month")

        if (self.monthly_withdrawal is None) == (self.withdrawal_percent is None):
            errors.append("exactly one of monthly_withdrawal and withdrawal_percent must be set")
        if self.monthly_withdrawal is not None and self.monthly_withdrawal < 0:
            errors.append("monthly_withdrawal must not be negative")
        if self.withdrawal_percent is not None and not 0 < self.withdrawal_percent <= 1:
            errors.append("withdrawal_percent must be in (0, 1]")
        if self.withdrawal_min < 0 or self.withdrawal_max < 0:
            errors.append("withdrawal clamps must not be negative")
        elif 0 < self.withdrawal_max < self.withdrawal_min:
            errors.append("withdrawal_max must not be below withdrawal_min")

        for name in (
            "start_cash",
            "start_invested",
            "start_cost_basis",
            "cash_target",
            "monthly_cash_contribution",
            "monthly_invested_contribution",
            "special_expense_accumulation",
            "special_expense_withdrawal",
            "annual_allowance",
            "initial_loss_pot",
            "fee_rate",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")

        if self.special_expense_accumulation > 0 and self.special_expense_accumulation_interval < 1:
            errors.append("special_expense_accumulation_interval must be at least 1 year")
        if self.special_expense_withdrawal > 0 and self.special_expense_withdrawal_interval < 1:
            errors.append("special_expense_withdrawal_interval must be at least 1 year")

        if 1 + self.invested_return - self.fee_rate <= 0:
            errors.append("invested_return net of fees must be above -100%")
        for name in ("cash_rate", "inflation_rate", "annual_raise"):
            if getattr(self, name) <= -1:
                errors.append(f"{name} must be above -100%")

        if not 0 < self.capital_preservation_threshold <= 1:
            errors.append("capital_preservation_threshold must be in (0, 1]")
        if not 0 <= self.capital_preservation_reduction <= 1:
            errors.append("capital_preservation_reduction must be in [0, 1]")
        if self.capital_preservation_recovery <= 0:
            errors.append("capital_preservation_recovery must be positive")

        if self.church_tax not in CHURCH_TAX_RATES:
            errors.append(f"unknown church_tax {self.church_tax!r}")
        if self.fund_type not in FUND_TYPE_TAXABLE_FRACTION:
            errors.append(f"unknown fund_type {self.fund_type!r}")
        if self.initial_price <= 0:
            errors.append("initial_price must be positive")
        return errors

    def ensure_valid(self) -> "ScenarioParameters":
        errors = self.validate()
        if errors:
            raise ScenarioValidationError(errors)
        return self

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: Dict) -> "ScenarioParameters":
        """Build parameters from a plain plan dictionary.

        Missing keys keep their defaults.  Setting ``withdrawal_percent``
        without ``monthly_withdrawal`` switches the plan to percentage mode.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ScenarioValidationError([f"unknown parameter {k!r}" for k in unknown])
        values = dict(data)
        if values.get("withdrawal_percent") is not None and "monthly_withdrawal" not in values:
            values["monthly_withdrawal"] = None
        return cls(**values)

    @classmethod
    def from_preset(cls, name: str, **overrides) -> "ScenarioParameters":
        if name not in SCENARIO_PRESETS:
            raise ScenarioValidationError([f"unknown preset {name!r}"])
        values = dict(SCENARIO_PRESETS[name])
        values.update(overrides)
        if overrides.get("monthly_withdrawal") is not None and "withdrawal_percent" not in overrides:
            values["withdrawal_percent"] = None
        if overrides.get("withdrawal_percent") is not None and "monthly_withdrawal" not in overrides:
            values.pop("monthly_withdrawal", None)
        return cls.from_dict(values)

    def with_updates(self, **changes) -> "ScenarioParameters":
        return replace(self, **changes)


SCENARIO_PRESETS: Dict[str, Dict] = {
    # long savings phase, high fund share, 3.5% withdrawal
    "fire": {
        "accumulation_years": 25,
        "withdrawal_years": 40,
        "monthly_cash_contribution": 200.0,
        "monthly_invested_contribution": 800.0,
        "cash_target": 10000.0,
        "withdrawal_percent": 0.035,
        "invested_return": 0.07,
        "inflation_adjust_withdrawal": True,
    },
    "classic": {
        "accumulation_years": 35,
        "withdrawal_years": 28,
        "monthly_cash_contribution": 150.0,
        "monthly_invested_contribution": 350.0,
        "cash_target": 8000.0,
        "withdrawal_percent": 0.04,
        "invested_return": 0.06,
        "capital_preservation_enabled": True,
    },
    "education": {
        "accumulation_years": 18,
        "withdrawal_years": 5,
        "monthly_cash_contribution": 50.0,
        "monthly_invested_contribution": 150.0,
        "cash_target": 3000.0,
        "monthly_withdrawal": 800.0,
        "inflation_adjust_withdrawal": True,
    },
    "emergency": {
        "accumulation_years": 10,
        "withdrawal_years": 25,
        "monthly_cash_contribution": 300.0,
        "monthly_invested_contribution": 100.0,
        "cash_target": 15000.0,
        "withdrawal_percent": 0.03,
        "invested_return": 0.05,
    },
}
