"""Tests for the monthly simulation engine."""

import pytest

from etf_planner.calculators import engine
from etf_planner.calculators.engine import SimulationOptions
from etf_planner.calculators.taxes import TaxLedger
from etf_planner.config import ScenarioParameters, ScenarioValidationError


def _plan(**overrides) -> ScenarioParameters:
    values = dict(
        start_cash=0.0,
        start_invested=100000.0,
        cash_target=0.0,
        accumulation_years=5,
        withdrawal_years=10,
        monthly_cash_contribution=0.0,
        monthly_invested_contribution=0.0,
        special_expense_accumulation=0.0,
        special_expense_withdrawal=0.0,
        monthly_withdrawal=500.0,
    )
    values.update(overrides)
    return ScenarioParameters(**values)


def test_end_to_end_bootstrap_then_withdrawal():
    """Five saving years on the bootstrap lot, then ten withdrawal years."""
    run = engine.simulate(_plan(), volatility=0.0, options=SimulationOptions(seed=42, start_year=2025))
    assert len(run) == 180
    first = run[60]
    assert run[59].phase == engine.ACCUMULATION
    assert first.phase == engine.WITHDRAWAL
    assert first.withdrawal > 0
    assert first.withdrawal == pytest.approx(500.0, abs=0.02)
    inflation = [s.cumulative_inflation for s in run]
    assert all(b > a for a, b in zip(inflation, inflation[1:]))
    # indexed payout in the second withdrawal year
    assert run[72].monthly_payout == pytest.approx(500.0 * 1.02)


def test_same_seed_same_run():
    params = ScenarioParameters(accumulation_years=3, withdrawal_years=3)
    options = SimulationOptions(seed=11, start_year=2025)
    a = engine.simulate(params, volatility=0.15, options=options)
    b = engine.simulate(params, volatility=0.15, options=options)
    assert list(a) == list(b)
    c = engine.simulate(params, volatility=0.15, options=SimulationOptions(seed=12, start_year=2025))
    assert list(a) != list(c)


def test_contributions_and_cash_overflow():
    params = _plan(
        start_cash=4950.0,
        start_invested=0.0,
        cash_target=5000.0,
        monthly_cash_contribution=100.0,
        monthly_invested_contribution=150.0,
        accumulation_years=1,
        withdrawal_years=1,
    )
    run = engine.simulate(params)
    assert run[0].cash == pytest.approx(5000.0)
    assert run[0].invested_contribution > 150.0
    # once the target is reached the cash saving goes into the fund
    assert run[1].cash_contribution == 0.0
    assert run[1].invested_contribution > 250.0


def test_contributions_grow_with_annual_raise():
    params = _plan(
        start_invested=0.0,
        cash_target=1e9,
        monthly_invested_contribution=100.0,
        annual_raise=0.10,
        accumulation_years=2,
        withdrawal_years=1,
    )
    run = engine.simulate(params)
    assert sum(s.invested_contribution for s in run[:12]) == pytest.approx(1200.0)
    assert run[12].invested_contribution == pytest.approx(110.0)


def test_deemed_distribution_tax_paid_in_following_january():
    params = _plan(start_cash=4000.0, cash_target=1e9, annual_allowance=0.0, accumulation_years=2, withdrawal_years=0)
    run = engine.simulate(params, options=SimulationOptions(start_year=2023))
    assert all(s.deemed_distribution_tax == 0.0 for s in run[:12])
    # 100 000 at year start, baseline rate 2.55 %, 70 % factor, 70 % taxable
    expected = 100000.0 * 0.0255 * 0.7 * 0.7 * 0.25 * 1.055
    assert run[12].deemed_distribution_tax == pytest.approx(expected, rel=1e-6)
    assert run[12].tax_paid >= run[12].deemed_distribution_tax
    # the final year's tax is settled in the last month
    assert run[-1].deemed_distribution_tax > 0


def test_final_deemed_distribution_settled_once():
    options = SimulationOptions(start_year=2023)
    base = dict(start_cash=4000.0, cash_target=1e9, annual_allowance=0.0, withdrawal_years=0)
    one_year = engine.simulate(_plan(accumulation_years=1, **base), options=options)
    two_years = engine.simulate(_plan(accumulation_years=2, **base), options=options)
    assert [s.month for s in one_year if s.deemed_distribution_tax > 0] == [12]
    assert [s.month for s in two_years if s.deemed_distribution_tax > 0] == [13, 24]
    # the 2023 accrual costs the same whether it is settled at the end or next January
    assert one_year[-1].deemed_distribution_tax == pytest.approx(two_years[12].deemed_distribution_tax)


def test_no_deemed_distribution_in_negative_rate_year():
    params = _plan(annual_allowance=0.0, accumulation_years=2, withdrawal_years=0)
    run = engine.simulate(params, options=SimulationOptions(start_year=2021))
    # 2021 and 2022 had negative baseline rates
    assert sum(s.deemed_distribution_tax for s in run) == 0.0


def test_percent_withdrawal_fixes_payout_from_retirement_wealth():
    params = _plan(monthly_withdrawal=None, withdrawal_percent=0.04, inflation_adjust_withdrawal=False)
    run = engine.simulate(params)
    first = run[60]
    assert first.payout_rate == 0.04
    assert first.monthly_payout > 0
    assert run[100].monthly_payout == pytest.approx(first.monthly_payout)
    assert all(s.payout_rate is None for s in run[:60])


def test_gross_withdrawal_pays_tax_out_of_payout():
    params = _plan(
        start_cost_basis=50000.0,
        accumulation_years=0,
        withdrawal_years=1,
        annual_allowance=0.0,
        monthly_withdrawal=1000.0,
        withdrawal_is_gross=True,
    )
    first = engine.simulate(params)[0]
    assert first.withdrawal == pytest.approx(1000.0)
    assert first.trading_tax > 0
    assert first.withdrawal_net == pytest.approx(1000.0 - first.trading_tax)


def test_shortfall_when_assets_run_out():
    params = _plan(start_invested=1000.0, accumulation_years=0, withdrawal_years=1, monthly_withdrawal=1000.0)
    run = engine.simulate(params)
    assert run[0].shortfall == 0.0
    assert run[1].shortfall > 900.0
    assert run[1].monthly_payout < 100.0
    assert all(s.total >= 0 for s in run)


def test_capital_preservation_throttles_payout():
    params = _plan(
        accumulation_years=0,
        withdrawal_years=5,
        monthly_withdrawal=2000.0,
        inflation_adjust_withdrawal=False,
        capital_preservation_enabled=True,
    )
    run = engine.simulate(params)
    active = [s for s in run if s.capital_preservation_active]
    assert active
    assert active[0].monthly_payout == pytest.approx(1500.0)
    assert run.capital_preservation_months == len(active)
    assert not run[0].capital_preservation_active


def test_special_expense_in_accumulation():
    params = _plan(
        start_cash=5000.0,
        cash_target=5000.0,
        accumulation_years=10,
        withdrawal_years=1,
        special_expense_accumulation=15000.0,
    )
    run = engine.simulate(params)
    month_120 = run[119]
    assert month_120.withdrawal_requested == pytest.approx(15000.0 * 1.02 ** 10)
    assert month_120.withdrawal == pytest.approx(month_120.withdrawal_requested, abs=0.02)
    assert run[118].withdrawal_requested == 0.0


def test_ledger_invariants_on_random_run():
    params = ScenarioParameters(accumulation_years=10, withdrawal_years=20, annual_allowance=1000.0)
    run = engine.simulate(params, volatility=0.2, options=SimulationOptions(seed=3, start_year=2025))
    for s in run:
        assert s.loss_pot >= 0
        assert 0 <= s.allowance_used <= 1000.0 + 1e-9
        assert s.cash >= -1e-9
        assert s.invested >= 0
        assert s.tax_paid == pytest.approx(s.trading_tax + s.interest_tax + s.deemed_distribution_tax)


def test_invalid_parameters_raise_before_running():
    with pytest.raises(ScenarioValidationError):
        engine.simulate(ScenarioParameters(withdrawal_percent=0.04))


def test_analyze_history():
    params = _plan()
    run = engine.simulate(params)
    summary = engine.analyze_history(run, params)
    assert summary.end_total == run[-1].total
    assert summary.retirement_total == run[59].total
    assert summary.total_invested == pytest.approx(100000.0)
    assert summary.min_withdrawal == pytest.approx(500.0)
    assert summary.max_withdrawal == pytest.approx(500.0 * 1.02 ** 9)
    assert not summary.has_shortfall


def test_many_lots_are_consolidated_in_december(monkeypatch):
    calls = []
    consolidate = TaxLedger.consolidate

    def recording_consolidate(self, *args, **kwargs):
        before = (len(self.lots), self.shares)
        consolidate(self, *args, **kwargs)
        calls.append((before, (len(self.lots), self.shares)))

    monkeypatch.setattr(TaxLedger, "consolidate", recording_consolidate)
    params = _plan(
        invested_return=0.0,
        fee_rate=0.0,
        monthly_invested_contribution=100.0,
        annual_raise=0.0,
        accumulation_years=6,
        withdrawal_years=0,
    )
    run = engine.simulate(params)
    # flat prices: the bootstrap lot and 60 purchases collapse into one
    assert len(calls) == 1
    (lots_before, shares_before), (lots_after, shares_after) = calls[0]
    assert lots_before == 61
    assert lots_after == 1
    assert shares_after == pytest.approx(shares_before)
    assert shares_before == pytest.approx((100000.0 + 60 * 100.0) / 100.0)
    assert run[-1].invested == pytest.approx(100000.0 + 72 * 100.0)


def test_lifo_sells_recent_purchases_first():
    def first_withdrawal_year_tax(use_lifo):
        params = _plan(
            monthly_invested_contribution=300.0,
            accumulation_years=3,
            withdrawal_years=2,
            annual_allowance=0.0,
            use_lifo=use_lifo,
        )
        run = engine.simulate(params, options=SimulationOptions(start_year=2025))
        year = run[36:48]
        assert all(s.withdrawal == pytest.approx(500.0, abs=0.02) for s in year)
        return sum(s.trading_tax for s in year)

    fifo_tax = first_withdrawal_year_tax(False)
    lifo_tax = first_withdrawal_year_tax(True)
    assert fifo_tax > 0
    assert lifo_tax < fifo_tax


def test_tax_exempt_plan_pays_no_tax():
    values = dict(start_cash=4000.0, cash_target=1e9, annual_allowance=0.0, withdrawal_years=2, accumulation_years=2)
    options = SimulationOptions(start_year=2023)
    taxed = engine.simulate(_plan(**values), options=options)
    exempt = engine.simulate(_plan(tax_exempt=True, **values), options=options)
    assert sum(s.tax_paid for s in taxed) > 0
    assert all(s.tax_paid == 0.0 for s in exempt)
    assert exempt[-1].total > taxed[-1].total
