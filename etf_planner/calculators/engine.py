"""Month-by-month simulation of one savings and withdrawal plan.

The engine advances a cash account and a fund position through the
accumulation phase and the withdrawal phase.  Within a month the order is
fixed:

1. inflation is compounded;
2. on the first month of a tax year the allowance resets and the deemed
   distribution tax of the previous year is paid;
3. the fund price moves and cash earns interest;
4. contributions are invested (accumulation) or the payout is raised by
   selling lots (withdrawal), periodic special expenses included;
5. in December cash interest is taxed, the deemed distribution of the year is
   computed and lots are consolidated when there are many of them;
6. a :class:`MonthlySnapshot` is recorded.

Given the same parameters and seed the engine returns identical results.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

import numpy as np

from ..config import (
    CONSOLIDATION_LOT_LIMIT,
    COVERAGE_EPSILON,
    MONTHS_PER_YEAR,
    ScenarioParameters,
    baseline_rate_for_year,
    load_market_tables,
)
from .preservation import CapitalPreservationController
from .returns import ReturnGenerator, make_rng, to_monthly_rate
from .taxes import Lot, PendingDeemedTax, TaxLedger

logger = logging.getLogger(__name__)

ACCUMULATION = "accumulation"
WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class SimulationOptions:
    stress_scenario: str = "none"
    # calendar year of the first simulated month; used for baseline rate lookups
    start_year: Optional[int] = None
    seed: Optional[int] = None

    def resolved_start_year(self) -> int:
        return self.start_year if self.start_year is not None else date.today().year


@dataclass(frozen=True)
class MonthlySnapshot:
    month: int
    year: int
    phase: str
    cash: float
    invested: float
    total: float
    total_real: float
    cash_contribution: float
    invested_contribution: float
    cash_interest: float
    withdrawal: float
    withdrawal_real: float
    withdrawal_net: float
    withdrawal_net_real: float
    withdrawal_requested: float
    shortfall: float
    tax_shortfall: float
    monthly_payout: float
    monthly_payout_real: float
    payout_rate: Optional[float]
    tax_paid: float
    trading_tax: float
    interest_tax: float
    deemed_distribution_tax: float
    return_gain: float
    asset_return: float
    portfolio_return: float
    cumulative_inflation: float
    capital_preservation_active: bool
    allowance_used: float
    loss_pot: float


class SimulationRun(Sequence):
    """Immutable sequence of snapshots produced by one :func:`simulate` call."""

    def __init__(
        self,
        snapshots,
        accumulation_months: int,
        capital_preservation_months: int = 0,
        capital_preservation_enabled: bool = False,
    ):
        self._snapshots: Tuple[MonthlySnapshot, ...] = tuple(snapshots)
        self.accumulation_months = accumulation_months
        self.capital_preservation_months = capital_preservation_months
        self.capital_preservation_enabled = capital_preservation_enabled

    def __getitem__(self, index):
        return self._snapshots[index]

    def __len__(self) -> int:
        return len(self._snapshots)

    def __repr__(self) -> str:
        return f"SimulationRun(months={len(self)}, accumulation_months={self.accumulation_months})"

    def column(self, name: str) -> np.ndarray:
        """Values of one snapshot field as a float array."""
        return np.array([getattr(s, name) for s in self._snapshots], dtype=float)


def _special_expense(amount: float, interval_years: int, inflation_adjusted: bool, month: int, inflation_rate: float) -> float:
    if amount <= 0 or interval_years <= 0 or month % (interval_years * MONTHS_PER_YEAR):
        return 0.0
    if inflation_adjusted:
        return amount * (1 + inflation_rate) ** (month / MONTHS_PER_YEAR)
    return amount


def _raise_cash(
    need: float, cash: float, target: float, ledger: TaxLedger, price: float, gross: bool = False
) -> Tuple[float, float, float, float]:
    """Raise ``need`` from surplus cash, fund sales and finally the cash reserve.

    Returns ``(cash, paid, net_paid, tax)``.  In gross mode ``need`` is a
    pre-tax amount and ``net_paid`` is what reaches the investor.
    """
    remaining = need
    net = 0.0
    tax = 0.0

    surplus = min(max(0.0, cash - target), remaining)
    cash -= surplus
    remaining -= surplus
    net += surplus

    if remaining > 0:
        if gross:
            sale = ledger.sell_gross(remaining, price)
            net += sale.net_proceeds
            remaining = sale.shortfall
        else:
            sale = ledger.sell_to_cover_net(remaining, price)
            remaining = sale.amount_still_needed
        tax += sale.tax_paid

    if remaining > COVERAGE_EPSILON:
        draw = min(max(cash, 0.0), remaining)
        cash -= draw
        remaining -= draw
        net += draw

    if remaining < 0:
        # sales overshoot the need by a few cents
        cash -= remaining
    if remaining <= COVERAGE_EPSILON:
        remaining = 0.0

    paid = need - remaining
    if not gross:
        net = paid
    return cash, paid, net, tax


def simulate(
    params: ScenarioParameters,
    volatility: float = 0.0,
    options: Optional[SimulationOptions] = None,
    rng: Optional[np.random.Generator] = None,
) -> SimulationRun:
    """Simulate ``params`` month by month.

    Parameters
    ----------
    params : ScenarioParameters
        The plan.  It is validated before the first month.
    volatility : float
        Annualized fund volatility; ``0`` gives a deterministic run.
    options : SimulationOptions, optional
        Stress scenario, start year and seed.
    rng : numpy.random.Generator, optional
        Random source; created from ``options.seed`` when omitted.

    Returns
    -------
    SimulationRun
        One snapshot per month.

    Raises
    ------
    ScenarioValidationError
        If the parameters are invalid.
    """
    params.ensure_valid()
    options = options or SimulationOptions()
    if volatility > 0 and rng is None:
        rng = make_rng(options.seed)

    returns = ReturnGenerator.for_scenario(params, volatility, rng, options.stress_scenario)
    ledger = TaxLedger.for_scenario(params)
    preservation = CapitalPreservationController.for_scenario(params)
    tables = load_market_tables()
    start_year = options.resolved_start_year()

    price = params.initial_price
    cash = params.start_cash
    if params.start_invested > 0:
        shares = params.start_invested / price
        basis = params.start_cost_basis if params.start_cost_basis > 0 else params.start_invested
        ledger.lots.append(Lot(shares, basis / shares, 0))

    monthly_cash_rate = to_monthly_rate(params.cash_rate)
    monthly_inflation = to_monthly_rate(params.inflation_rate)
    accumulation_months = params.accumulation_months
    total_months = params.total_months
    target = params.cash_target

    cash_full = cash >= target
    tax_year = 0
    price_at_year_start = price
    interest_this_year = 0.0
    pending: Optional[PendingDeemedTax] = None
    cumulative_inflation = 1.0
    retirement_start_wealth: Optional[float] = None
    base_payout = 0.0
    payout_rate: Optional[float] = None
    snapshots: List[MonthlySnapshot] = []

    for month in range(1, total_months + 1):
        accumulating = month <= accumulation_months
        year_idx = (month - 1) // MONTHS_PER_YEAR
        month_in_year = (month - 1) % MONTHS_PER_YEAR + 1
        trading_tax = interest_tax = deemed_tax = 0.0
        tax_shortfall = 0.0

        cumulative_inflation *= 1 + monthly_inflation
        invested_start = ledger.value(price)
        portfolio_start = cash + invested_start

        # --- new tax year ---
        if year_idx != tax_year:
            ledger.start_tax_year()
            if pending is not None:
                cover = ledger.settle_deemed_distribution(pending, cash, price)
                pending = None
                cash = cover.cash
                deemed_tax += cover.tax_covered
                trading_tax += cover.sale_tax
                tax_shortfall += cover.shortfall
            tax_year = year_idx
            price_at_year_start = price
            interest_this_year = 0.0

        # --- market ---
        factor = returns.next_factor(month)
        price *= factor
        interest = cash * monthly_cash_rate
        cash += interest
        interest_this_year += interest
        return_gain = invested_start * (factor - 1) + interest

        cash_contribution = invested_contribution = 0.0
        requested = paid = net_paid = 0.0
        monthly_payout = 0.0

        if accumulating:
            raise_factor = (1 + params.annual_raise) ** year_idx
            cash_part = params.monthly_cash_contribution * raise_factor
            invested_part = params.monthly_invested_contribution * raise_factor
            if cash_full:
                invested_contribution = invested_part + cash_part
            else:
                cash += cash_part
                cash_contribution = cash_part
                invested_contribution = invested_part
            if cash > target:
                invested_contribution += cash - target
                cash = target
                cash_full = True
            ledger.buy(invested_contribution, price, month)

            requested = _special_expense(
                params.special_expense_accumulation,
                params.special_expense_accumulation_interval,
                params.special_expense_accumulation_inflation,
                month,
                params.inflation_rate,
            )
            if requested > 0:
                cash, paid, net_paid, tax = _raise_cash(requested, cash, target, ledger, price)
                trading_tax += tax
                if cash < target:
                    cash_full = False
        else:
            if retirement_start_wealth is None:
                retirement_start_wealth = cash + ledger.value(price)
                if params.uses_percent_withdrawal:
                    base_payout = retirement_start_wealth * params.withdrawal_percent / MONTHS_PER_YEAR
                    payout_rate = params.withdrawal_percent
                else:
                    base_payout = params.monthly_withdrawal
                    if retirement_start_wealth > 0:
                        payout_rate = base_payout * MONTHS_PER_YEAR / retirement_start_wealth
                    else:
                        payout_rate = 0.0

            payout = base_payout
            if params.inflation_adjust_withdrawal:
                withdrawal_year = year_idx - params.accumulation_years
                payout = base_payout * (1 + params.inflation_rate) ** withdrawal_year
            if params.withdrawal_min > 0:
                payout = max(payout, params.withdrawal_min)
            if params.withdrawal_max > 0:
                payout = min(payout, params.withdrawal_max)

            preservation.update(cash + ledger.value(price), retirement_start_wealth)
            payout = preservation.adjust(payout)

            requested = payout + _special_expense(
                params.special_expense_withdrawal,
                params.special_expense_withdrawal_interval,
                params.special_expense_withdrawal_inflation,
                month,
                params.inflation_rate,
            )
            if requested > 0:
                cash, paid, net_paid, tax = _raise_cash(
                    requested, cash, target, ledger, price, gross=params.withdrawal_is_gross
                )
                trading_tax += tax
            if requested > 0 and paid < requested:
                monthly_payout = payout * paid / requested
            else:
                monthly_payout = payout

        # --- year end ---
        if month_in_year == MONTHS_PER_YEAR:
            if interest_this_year > 0:
                due = ledger.shelter(interest_this_year) * ledger.tax_rate
                if due > COVERAGE_EPSILON:
                    cover = ledger.cover_tax(due, cash, price)
                    cash = cover.cash
                    interest_tax += cover.tax_covered
                    trading_tax += cover.sale_tax
                    tax_shortfall += cover.shortfall
            baseline_rate = baseline_rate_for_year(start_year + year_idx, params.baseline_rate, tables)
            pending = ledger.accrue_deemed_distribution(year_idx, price, price_at_year_start, baseline_rate)
            if len(ledger.lots) > CONSOLIDATION_LOT_LIMIT:
                ledger.consolidate()

        # the last year's deemed distribution has no following January
        if month == total_months and pending is not None:
            ledger.start_tax_year()
            cover = ledger.settle_deemed_distribution(pending, cash, price)
            pending = None
            cash = cover.cash
            deemed_tax += cover.tax_covered
            trading_tax += cover.sale_tax
            tax_shortfall += cover.shortfall

        invested = ledger.value(price)
        total = cash + invested
        portfolio_return = factor
        if portfolio_start > 0:
            weight = invested_start / portfolio_start
            portfolio_return = weight * factor + (1 - weight) * (1 + monthly_cash_rate)
        withdrawal_net = net_paid if not accumulating and requested > 0 else 0.0

        snapshots.append(
            MonthlySnapshot(
                month=month,
                year=year_idx + 1,
                phase=ACCUMULATION if accumulating else WITHDRAWAL,
                cash=cash,
                invested=invested,
                total=total,
                total_real=total / cumulative_inflation,
                cash_contribution=cash_contribution,
                invested_contribution=invested_contribution,
                cash_interest=interest,
                withdrawal=paid,
                withdrawal_real=paid / cumulative_inflation,
                withdrawal_net=withdrawal_net,
                withdrawal_net_real=withdrawal_net / cumulative_inflation,
                withdrawal_requested=requested,
                shortfall=max(0.0, requested - paid) if requested > 0 else 0.0,
                tax_shortfall=tax_shortfall,
                monthly_payout=monthly_payout,
                monthly_payout_real=monthly_payout / cumulative_inflation,
                payout_rate=None if accumulating else payout_rate,
                tax_paid=trading_tax + interest_tax + deemed_tax,
                trading_tax=trading_tax,
                interest_tax=interest_tax,
                deemed_distribution_tax=deemed_tax,
                return_gain=return_gain,
                asset_return=factor,
                portfolio_return=portfolio_return,
                cumulative_inflation=cumulative_inflation,
                capital_preservation_active=preservation.active and not accumulating,
                allowance_used=ledger.allowance_used,
                loss_pot=ledger.loss_pot,
            )
        )

    logger.debug(
        "simulated %d months (volatility=%.3f, stress=%s), end total %.2f",
        total_months,
        volatility,
        options.stress_scenario,
        snapshots[-1].total,
    )
    return SimulationRun(
        snapshots,
        accumulation_months=accumulation_months,
        capital_preservation_months=preservation.throttled_months,
        capital_preservation_enabled=params.capital_preservation_enabled,
    )


@dataclass(frozen=True)
class RunSummary:
    end_total: float
    end_total_real: float
    retirement_total: float
    retirement_total_real: float
    total_invested: float
    total_return: float
    total_tax: float
    total_deemed_distribution_tax: float
    avg_withdrawal: float
    min_withdrawal: float
    max_withdrawal: float
    total_withdrawals: float
    shortfall_months: int
    capital_preservation_months: int
    final_loss_pot: float
    cumulative_inflation: float

    @property
    def has_shortfall(self) -> bool:
        return self.shortfall_months > 0


def analyze_history(run: SimulationRun, params: ScenarioParameters) -> Optional[RunSummary]:
    """Headline figures of a single run, ``None`` for an empty run."""
    if len(run) == 0:
        return None
    last = run[-1]
    retirement = run[max(0, min(params.accumulation_months - 1, len(run) - 1))]
    accumulation = [s for s in run if s.phase == ACCUMULATION]
    withdrawal = [s for s in run if s.phase == WITHDRAWAL]

    total_invested = params.start_cash + params.start_invested + sum(
        s.cash_contribution + s.invested_contribution for s in accumulation
    )
    payouts = [s.monthly_payout for s in withdrawal if s.monthly_payout > 0]

    return RunSummary(
        end_total=last.total,
        end_total_real=last.total_real,
        retirement_total=retirement.total,
        retirement_total_real=retirement.total_real,
        total_invested=total_invested,
        total_return=sum(s.return_gain for s in run),
        total_tax=sum(s.tax_paid for s in run),
        total_deemed_distribution_tax=sum(s.deemed_distribution_tax for s in run),
        avg_withdrawal=sum(payouts) / len(payouts) if payouts else 0.0,
        min_withdrawal=min(payouts) if payouts else 0.0,
        max_withdrawal=max(payouts) if payouts else 0.0,
        total_withdrawals=sum(s.withdrawal for s in withdrawal),
        shortfall_months=sum(1 for s in run if s.shortfall > 0),
        capital_preservation_months=run.capital_preservation_months,
        final_loss_pot=last.loss_pot,
        cumulative_inflation=last.cumulative_inflation,
    )
