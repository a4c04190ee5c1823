"""Company pension (bAV) versus ETF savings plan.

Deferred compensation into a company pension is paid out of gross salary, so
each euro contributed costs less than a euro of net pay.  This module asks
whether investing that net cost in an ETF instead would pay more in
retirement.  Both savings phases run through :func:`engine.simulate` with the
same monthly ledger the rest of the planner uses; the pension contract is
simulated with ``tax_exempt=True`` because it is only taxed on payout.

The model is a tendency calculator rather than a precise one:

* The income tax saving uses the marginal rate of the gross income, not the
  exact taxable income.
* Contributions are tax free up to 8 % and free of social security up to
  4 % of the pension insurance ceiling.
* Every euro converted reduces the statutory pension by the earnings points
  it would have bought; 15 % of that pension is assumed to go to health,
  care and income tax.
* The company pension pays health insurance above a monthly allowance, care
  insurance on the full amount and a flat 15 % income tax plus solidarity
  surcharge.
* With the lifecycle option the pension's return is the time-weighted average
  of a growth phase, a four year balanced phase and a three year defensive
  phase before retirement.
* The ETF capital is paid out as an annuity at 3 % over the retirement years;
  the gain share of each payout is taxed once a year after the allowance.

Example
-------

>>> round(marginal_tax_rate(50000), 2)
0.24
>>> round(tax_savings(200.0, 50000.0).monthly_net_cost, 2)
108.46
>>> annuity_break_even(100000.0, 20.5).monthly_pension
205.0
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Dict, List, Optional, Sequence

from ..config import (
    ALLOWANCE_SINGLE,
    FUND_TYPE_TAXABLE_FRACTION,
    MONTHS_PER_YEAR,
    SOLIDARITY_SURCHARGE,
    ScenarioParameters,
    ScenarioValidationError,
)
from .engine import SimulationOptions, SimulationRun, simulate
from .returns import to_monthly_rate
from .taxes import capital_gains_tax_rate

logger = logging.getLogger(__name__)

PENSION_INSURANCE_CEILING = 90600.0
TAX_FREE_SHARE = 0.08
SOCIAL_SECURITY_FREE_SHARE = 0.04

PENSION_POINT_VALUE = 39.32
AVERAGE_EARNINGS = 45358.0
STATUTORY_PENSION_NET_FACTOR = 0.85

# monthly, applies to health insurance only
HEALTH_INSURANCE_ALLOWANCE = 176.75
HEALTH_INSURANCE_RATE = 0.163
CARE_INSURANCE_RATE_CHILDLESS = 0.034
CARE_INSURANCE_RATE_WITH_CHILDREN = 0.023
# pension and unemployment insurance, employee share
PENSION_UNEMPLOYMENT_RATE = 0.106
PENSION_INCOME_TAX_RATE = 0.15

# after product costs
LIFECYCLE_GROWTH_RETURN = 0.05
LIFECYCLE_BALANCED_RETURN = 0.038
LIFECYCLE_DEFENSIVE_RETURN = 0.028

ETF_PAYOUT_RATE = 0.03
FOUR_PERCENT_RULE = 0.04
ANNUITY_FACTOR_UNIT = 10000.0

INCOME_TAX_BRACKETS = (
    (11604.0, 0.0),
    (17005.0, 0.14),
    (66760.0, 0.24),
    (277825.0, 0.42),
    (math.inf, 0.45),
)

COMPANY_PENSION = "company_pension"
ETF = "etf"
CONTINUE = "continue"
PAUSE = "pause"


def marginal_tax_rate(annual_income: float) -> float:
    """Simplified marginal income tax rate for ``annual_income``."""
    for limit, rate in INCOME_TAX_BRACKETS:
        if annual_income <= limit:
            return rate
    return INCOME_TAX_BRACKETS[-1][1]


def _care_rate(has_children: bool) -> float:
    return CARE_INSURANCE_RATE_WITH_CHILDREN if has_children else CARE_INSURANCE_RATE_CHILDLESS


@dataclass(frozen=True)
class TaxSavings:
    monthly_contribution: float
    income_tax: float
    social_security: float
    marginal_rate: float

    @property
    def total(self) -> float:
        return self.income_tax + self.social_security

    @property
    def monthly_net_cost(self) -> float:
        """What the employee's contribution costs out of net pay."""
        return self.monthly_contribution - self.total / MONTHS_PER_YEAR


def tax_savings(
    monthly_employee_contribution: float, annual_gross_income: float, has_children: bool = False
) -> TaxSavings:
    """Annual income tax and social security saved by deferred compensation."""
    annual = monthly_employee_contribution * MONTHS_PER_YEAR
    tax_free = min(annual, PENSION_INSURANCE_CEILING * TAX_FREE_SHARE)
    social_security_free = min(annual, PENSION_INSURANCE_CEILING * SOCIAL_SECURITY_FREE_SHARE)
    rate = marginal_tax_rate(annual_gross_income)
    social_security_rate = HEALTH_INSURANCE_RATE / 2 + _care_rate(has_children) / 2 + PENSION_UNEMPLOYMENT_RATE
    return TaxSavings(
        monthly_contribution=monthly_employee_contribution,
        income_tax=tax_free * rate * (1 + SOLIDARITY_SURCHARGE),
        social_security=social_security_free * social_security_rate,
        marginal_rate=rate,
    )


@dataclass(frozen=True)
class StatutoryPensionLoss:
    points_per_year: float
    total_points: float
    monthly_gross: float
    monthly_net: float

    @property
    def annual_gross(self) -> float:
        return self.monthly_gross * MONTHS_PER_YEAR

    @property
    def annual_net(self) -> float:
        return self.monthly_net * MONTHS_PER_YEAR


def statutory_pension_loss(monthly_employee_contribution: float, years: float) -> StatutoryPensionLoss:
    """Statutory pension lost because converted salary buys no earnings points."""
    points_per_year = monthly_employee_contribution * MONTHS_PER_YEAR / AVERAGE_EARNINGS
    total_points = points_per_year * years
    monthly_gross = total_points * PENSION_POINT_VALUE
    return StatutoryPensionLoss(
        points_per_year, total_points, monthly_gross, monthly_gross * STATUTORY_PENSION_NET_FACTOR
    )


@dataclass(frozen=True)
class AnnuityBreakEven:
    monthly_pension: float
    years_to_break_even: float

    def break_even_age(self, retirement_age: float) -> float:
        return retirement_age + self.years_to_break_even


def annuity_break_even(capital: float, annuity_factor: float) -> AnnuityBreakEven:
    """Pension per month from ``capital`` and the years until it has paid the capital back.

    The annuity factor is the monthly pension per 10 000 EUR of capital.
    """
    monthly = capital / ANNUITY_FACTOR_UNIT * annuity_factor
    if annuity_factor <= 0:
        return AnnuityBreakEven(monthly, math.inf)
    return AnnuityBreakEven(monthly, ANNUITY_FACTOR_UNIT / annuity_factor / MONTHS_PER_YEAR)


@dataclass(frozen=True)
class PensionNet:
    monthly_gross: float
    annual_health_insurance: float
    annual_care_insurance: float
    annual_income_tax: float

    @property
    def annual_deductions(self) -> float:
        return self.annual_health_insurance + self.annual_care_insurance + self.annual_income_tax

    @property
    def monthly_net(self) -> float:
        return self.monthly_gross - self.annual_deductions / MONTHS_PER_YEAR

    @property
    def effective_rate(self) -> float:
        annual = self.monthly_gross * MONTHS_PER_YEAR
        return self.annual_deductions / annual if annual > 0 else 0.0


def net_company_pension(monthly_gross: float, has_children: bool = False) -> PensionNet:
    """Company pension after health, care and income tax."""
    annual = monthly_gross * MONTHS_PER_YEAR
    health_base = max(0.0, monthly_gross - HEALTH_INSURANCE_ALLOWANCE) * MONTHS_PER_YEAR
    return PensionNet(
        monthly_gross=monthly_gross,
        annual_health_insurance=health_base * HEALTH_INSURANCE_RATE,
        annual_care_insurance=annual * _care_rate(has_children),
        annual_income_tax=annual * PENSION_INCOME_TAX_RATE * (1 + SOLIDARITY_SURCHARGE),
    )


def lifecycle_return(years_until_retirement: int, fallback: float) -> float:
    """Time-weighted return of the growth, balanced and defensive phases.

    ``fallback`` is returned when there is no saving period left.
    """
    if years_until_retirement <= 0:
        return fallback
    growth = max(0, years_until_retirement - 7)
    balanced = min(4, max(0, years_until_retirement - 3))
    defensive = min(3, years_until_retirement)
    return (
        growth * LIFECYCLE_GROWTH_RETURN
        + balanced * LIFECYCLE_BALANCED_RETURN
        + defensive * LIFECYCLE_DEFENSIVE_RETURN
    ) / (growth + balanced + defensive)


@dataclass(frozen=True)
class PensionComparisonInputs:
    """Inputs of a company pension comparison.  Rates are decimals."""

    current_age: int = 35
    retirement_age: int = 67
    life_expectancy: int = 85
    annual_gross_income: float = 50000.0
    has_children: bool = False

    # total monthly contribution, including the employer's part
    pension_contribution: float = 292.0
    employer_contribution: float = 48.67
    guaranteed_capital: float = 132276.0
    guaranteed_pension: float = 339.02
    annuity_factor: float = 20.5
    pension_return: float = 0.05
    product_costs: float = 0.0
    pension_start_capital: float = 0.0
    lifecycle: bool = True

    etf_return: float = 0.07
    etf_fee: float = 0.0022
    etf_volatility: float = 0.0
    inflation_rate: float = 0.02
    annual_allowance: float = ALLOWANCE_SINGLE
    start_year: Optional[int] = None
    seed: Optional[int] = None

    @property
    def years_until_retirement(self) -> int:
        return self.retirement_age - self.current_age

    @property
    def retirement_years(self) -> int:
        return self.life_expectancy - self.retirement_age

    @property
    def employee_contribution(self) -> float:
        return self.pension_contribution - self.employer_contribution

    def validate(self) -> List[str]:
        errors: List[str] = []
        if self.retirement_age < self.current_age:
            errors.append("retirement_age must not be before current_age")
        if self.life_expectancy <= self.retirement_age:
            errors.append("life_expectancy must be after retirement_age")
        for name in (
            "annual_gross_income",
            "pension_contribution",
            "employer_contribution",
            "guaranteed_capital",
            "guaranteed_pension",
            "annuity_factor",
            "product_costs",
            "pension_start_capital",
            "etf_fee",
            "etf_volatility",
            "annual_allowance",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")
        if self.employer_contribution > self.pension_contribution:
            errors.append("employer_contribution must not exceed pension_contribution")
        return errors

    def ensure_valid(self) -> "PensionComparisonInputs":
        errors = self.validate()
        if errors:
            raise ScenarioValidationError(errors)
        return self


def _savings_run(
    inputs: PensionComparisonInputs,
    start_capital: float,
    monthly: float,
    annual_return: float,
    fee: float = 0.0,
    volatility: float = 0.0,
    tax_exempt: bool = False,
) -> Optional[SimulationRun]:
    """Savings phase only, everything in the fund; ``None`` when already retired."""
    if inputs.years_until_retirement == 0:
        return None
    params = ScenarioParameters(
        start_cash=0.0,
        start_invested=start_capital,
        cash_rate=0.0,
        invested_return=annual_return,
        fee_rate=fee,
        inflation_rate=inputs.inflation_rate,
        cash_target=0.0,
        accumulation_years=inputs.years_until_retirement,
        monthly_cash_contribution=0.0,
        monthly_invested_contribution=monthly,
        annual_raise=0.0,
        special_expense_accumulation=0.0,
        special_expense_withdrawal=0.0,
        withdrawal_years=0,
        monthly_withdrawal=0.0,
        annual_allowance=0.0 if tax_exempt else inputs.annual_allowance,
        tax_exempt=tax_exempt,
    )
    options = SimulationOptions(start_year=inputs.start_year, seed=inputs.seed)
    return simulate(params, volatility, options)


def _end_capital(run: Optional[SimulationRun], start_capital: float) -> float:
    return run[-1].total if run is not None else start_capital


def annuity_payment(capital: float, months: int, annual_rate: float = ETF_PAYOUT_RATE) -> float:
    """Level monthly payment that uses up ``capital`` over ``months``."""
    if months <= 0:
        return 0.0
    rate = to_monthly_rate(annual_rate)
    if rate == 0:
        return capital / months
    return capital * rate / (1 - (1 + rate) ** -months)


def _net_of_payout_tax(monthly_gross: float, gain_ratio: float, allowance: float) -> float:
    """Monthly payout after tax on its gain share, with the allowance applied per year."""
    annual = monthly_gross * MONTHS_PER_YEAR
    taxable = annual * gain_ratio * FUND_TYPE_TAXABLE_FRACTION["equity"]
    annual_tax = max(0.0, taxable - allowance) * capital_gains_tax_rate()
    return monthly_gross - annual_tax / MONTHS_PER_YEAR


@dataclass(frozen=True)
class PensionSide:
    end_capital: float
    end_capital_real: float
    total_contributions: float
    employee_contributions: float
    employer_contributions: float
    annual_return: float
    monthly_pension_gross: float
    monthly_pension_net: float
    effective_tax_rate: float
    total_net: float
    statutory_loss_monthly: float
    break_even_age: float
    history: Optional[SimulationRun]


@dataclass(frozen=True)
class EtfSide:
    end_capital: float
    end_capital_real: float
    total_contributions: float
    gain_ratio: float
    monthly_gross: float
    monthly_net: float
    four_percent_net: float
    total_net: float
    annual_return: float
    history: Optional[SimulationRun]


@dataclass(frozen=True)
class PensionComparison:
    inputs: PensionComparisonInputs
    tax_savings: TaxSavings
    statutory_loss: StatutoryPensionLoss
    break_even: AnnuityBreakEven
    # before product costs
    effective_pension_return: float
    inflation_factor: float
    pension: PensionSide
    etf: EtfSide

    @property
    def monthly_net_cost(self) -> float:
        return self.tax_savings.monthly_net_cost

    @property
    def pension_advantage(self) -> float:
        return self.pension.total_net - self.etf.total_net

    @property
    def pension_advantage_real(self) -> float:
        return self.pension_advantage / self.inflation_factor

    @property
    def pension_advantage_percent(self) -> float:
        if self.etf.total_net <= 0:
            return 0.0
        return (self.pension.total_net / self.etf.total_net - 1) * 100

    @property
    def monthly_net_difference(self) -> float:
        return self.pension.monthly_pension_net - self.etf.monthly_net

    @property
    def recommendation(self) -> str:
        return COMPANY_PENSION if self.pension.total_net > self.etf.total_net else ETF


def compare_pension_vs_etf(inputs: PensionComparisonInputs) -> PensionComparison:
    """Compare a company pension with investing its net cost in an ETF.

    The ETF plan saves what the employee's share costs out of net pay; the
    employer's share only goes into the pension.  The pension pays the larger
    of the annuity on its end capital and the guaranteed pension, reduced by
    health, care and income tax.  Net totals cover all retirement years.

    Raises
    ------
    ScenarioValidationError
        If the inputs are invalid.
    """
    inputs.ensure_valid()
    years = inputs.years_until_retirement
    months = years * MONTHS_PER_YEAR
    retirement_months = inputs.retirement_years * MONTHS_PER_YEAR
    inflation_factor = (1 + inputs.inflation_rate) ** years

    savings = tax_savings(inputs.employee_contribution, inputs.annual_gross_income, inputs.has_children)
    loss = statutory_pension_loss(inputs.employee_contribution, years)
    break_even = annuity_break_even(inputs.guaranteed_capital, inputs.annuity_factor)

    effective_return = inputs.pension_return
    if inputs.lifecycle:
        effective_return = lifecycle_return(years, inputs.pension_return)
    pension_return = max(effective_return - inputs.product_costs, 0.0)

    pension_run = _savings_run(
        inputs, inputs.pension_start_capital, inputs.pension_contribution, pension_return, tax_exempt=True
    )
    pension_capital = _end_capital(pension_run, inputs.pension_start_capital)
    monthly_pension = max(
        annuity_break_even(pension_capital, inputs.annuity_factor).monthly_pension, inputs.guaranteed_pension
    )
    pension_net = net_company_pension(monthly_pension, inputs.has_children)
    employer_total = inputs.employer_contribution * months
    pension = PensionSide(
        end_capital=pension_capital,
        end_capital_real=pension_capital / inflation_factor,
        total_contributions=inputs.pension_contribution * months,
        employee_contributions=inputs.employee_contribution * months,
        employer_contributions=employer_total,
        annual_return=pension_return,
        monthly_pension_gross=monthly_pension,
        monthly_pension_net=pension_net.monthly_net,
        effective_tax_rate=pension_net.effective_rate,
        total_net=pension_net.monthly_net * retirement_months,
        statutory_loss_monthly=loss.monthly_net,
        break_even_age=break_even.break_even_age(inputs.retirement_age),
        history=pension_run,
    )

    monthly_etf = max(savings.monthly_net_cost, 0.0)
    etf_run = _savings_run(
        inputs, 0.0, monthly_etf, inputs.etf_return, fee=inputs.etf_fee, volatility=inputs.etf_volatility
    )
    etf_capital = _end_capital(etf_run, 0.0)
    etf_contributions = monthly_etf * months
    gain_ratio = (etf_capital - etf_contributions) / etf_capital if etf_capital > 0 else 0.0
    etf_gross = annuity_payment(etf_capital, retirement_months)
    etf_net = _net_of_payout_tax(etf_gross, gain_ratio, inputs.annual_allowance)
    four_percent = _net_of_payout_tax(
        etf_capital * FOUR_PERCENT_RULE / MONTHS_PER_YEAR, gain_ratio, inputs.annual_allowance
    )
    etf = EtfSide(
        end_capital=etf_capital,
        end_capital_real=etf_capital / inflation_factor,
        total_contributions=etf_contributions,
        gain_ratio=gain_ratio,
        monthly_gross=etf_gross,
        monthly_net=etf_net,
        four_percent_net=four_percent,
        total_net=etf_net * retirement_months,
        annual_return=inputs.etf_return,
        history=etf_run,
    )

    comparison = PensionComparison(
        inputs=inputs,
        tax_savings=savings,
        statutory_loss=loss,
        break_even=break_even,
        effective_pension_return=effective_return,
        inflation_factor=inflation_factor,
        pension=pension,
        etf=etf,
    )
    logger.debug(
        "pension %.2f vs ETF %.2f net over %d retirement years",
        pension.total_net,
        etf.total_net,
        inputs.retirement_years,
    )
    return comparison


@dataclass(frozen=True)
class ContributionPause:
    """Continuing the pension versus pausing it and saving the net cost in an ETF."""

    continued: PensionComparison
    paused_pension_capital: float
    paused_pension_net: float
    etf_end_capital: float
    etf_monthly_net: float
    employer_contributions_lost: float

    @property
    def continued_monthly_net(self) -> float:
        return self.continued.pension.monthly_pension_net

    @property
    def continued_total_net(self) -> float:
        return self.continued.pension.total_net

    @property
    def paused_monthly_net(self) -> float:
        return self.paused_pension_net + self.etf_monthly_net

    @property
    def paused_total_net(self) -> float:
        return self.paused_monthly_net * self.continued.inputs.retirement_years * MONTHS_PER_YEAR

    @property
    def monthly_difference(self) -> float:
        return self.paused_monthly_net - self.continued_monthly_net

    @property
    def total_difference(self) -> float:
        return self.paused_total_net - self.continued_total_net

    @property
    def percent_difference(self) -> float:
        if self.continued_total_net <= 0:
            return 0.0
        return (self.paused_total_net / self.continued_total_net - 1) * 100

    @property
    def recommendation(self) -> str:
        return PAUSE if self.paused_total_net > self.continued_total_net else CONTINUE

    @property
    def warnings(self) -> List[str]:
        return [
            f"the employer contribution of {self.employer_contributions_lost:.0f} EUR is lost",
            "guaranteed benefits shrink to what the paused contract has earned",
            "the statutory pension lost on past contributions stays lost",
        ]


def simulate_contribution_pause(inputs: PensionComparisonInputs, current_capital: float) -> ContributionPause:
    """Pause contributions to a contract worth ``current_capital``.

    The paused contract keeps growing tax free without a guaranteed minimum
    pension, and the employee's net cost is saved in an ETF instead.
    """
    if current_capital < 0:
        raise ScenarioValidationError(["current_capital must not be negative"])
    continued = compare_pension_vs_etf(inputs)

    pension_return = max(inputs.pension_return - inputs.product_costs, 0.0)
    paused_run = _savings_run(inputs, current_capital, 0.0, pension_return, tax_exempt=True)
    paused_capital = _end_capital(paused_run, current_capital)
    paused_pension = annuity_break_even(paused_capital, inputs.annuity_factor).monthly_pension
    paused_net = net_company_pension(paused_pension, inputs.has_children).monthly_net

    monthly_etf = max(continued.monthly_net_cost, 0.0)
    etf_run = _savings_run(inputs, 0.0, monthly_etf, inputs.etf_return, fee=inputs.etf_fee)
    etf_capital = _end_capital(etf_run, 0.0)
    contributions = monthly_etf * inputs.years_until_retirement * MONTHS_PER_YEAR
    gain_ratio = (etf_capital - contributions) / etf_capital if etf_capital > 0 else 0.0
    etf_gross = annuity_payment(etf_capital, inputs.retirement_years * MONTHS_PER_YEAR)

    return ContributionPause(
        continued=continued,
        paused_pension_capital=paused_capital,
        paused_pension_net=paused_net,
        etf_end_capital=etf_capital,
        etf_monthly_net=_net_of_payout_tax(etf_gross, gain_ratio, inputs.annual_allowance),
        employer_contributions_lost=inputs.employer_contribution * inputs.years_until_retirement * MONTHS_PER_YEAR,
    )


def sensitivity_analysis(base: PensionComparisonInputs, field: str, values: Sequence) -> List[Dict]:
    """Rerun the comparison with ``field`` set to each of ``values``.

    Each row holds the value, both net totals, their difference and the
    recommendation.
    """
    if field not in {f.name for f in fields(base)}:
        raise ScenarioValidationError([f"unknown comparison input {field!r}"])
    rows = []
    for value in values:
        result = compare_pension_vs_etf(replace(base, **{field: value}))
        rows.append(
            {
                field: value,
                "pension_total": result.pension.total_net,
                "etf_total": result.etf.total_net,
                "difference": result.pension_advantage,
                "recommendation": result.recommendation,
            }
        )
    return rows
