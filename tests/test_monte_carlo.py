"""Tests for the Monte Carlo aggregator."""

import threading

import numpy as np
import pytest

from etf_planner.calculators import engine, monte_carlo
from etf_planner.calculators.monte_carlo import MonteCarloOptions, SorrSample
from etf_planner.config import ScenarioParameters, ScenarioValidationError


def _plan(**overrides) -> ScenarioParameters:
    values = dict(
        start_cash=2000.0,
        start_invested=40000.0,
        cash_target=3000.0,
        accumulation_years=5,
        withdrawal_years=10,
        monthly_cash_contribution=50.0,
        monthly_invested_contribution=300.0,
        special_expense_accumulation=0.0,
        special_expense_withdrawal=0.0,
        monthly_withdrawal=300.0,
    )
    values.update(overrides)
    return ScenarioParameters(**values)


def _options(**overrides) -> MonteCarloOptions:
    values = dict(iterations=20, volatility=0.15, seed=5, start_year=2025, chunk_size=8)
    values.update(overrides)
    return MonteCarloOptions(**values)


def test_percentile_interpolates_linearly():
    assert monte_carlo.percentile([1.0, 2.0, 3.0, 4.0], 50) == 2.5
    assert monte_carlo.percentile([1.0, 2.0, 3.0, 4.0], 0) == 1.0
    assert monte_carlo.percentile([1.0, 2.0, 3.0, 4.0], 100) == 4.0
    assert monte_carlo.percentile([], 50) == 0.0


def test_repeatability_with_seed():
    """Runs should be repeatable when the same seed is provided."""
    a = monte_carlo.run_monte_carlo(_plan(), _options())
    b = monte_carlo.run_monte_carlo(_plan(), _options())
    assert a.success_rate == b.success_rate
    assert a.end_percentiles == b.end_percentiles
    np.testing.assert_array_equal(a.percentiles[50], b.percentiles[50])


def test_percentile_bands_are_ordered():
    result = monte_carlo.run_monte_carlo(_plan(), _options(iterations=30))
    keys = sorted(result.percentiles)
    assert keys == [5, 10, 25, 50, 75, 90, 95]
    for lo, hi in zip(keys, keys[1:]):
        assert (result.percentiles[lo] <= result.percentiles[hi] + 1e-9).all()
        assert (result.percentiles_real[lo] <= result.percentiles_real[hi] + 1e-9).all()
    assert len(result.months) == 180


def test_success_and_ruin_are_exclusive():
    for withdrawal in (300.0, 900.0, 2000.0):
        result = monte_carlo.run_monte_carlo(_plan(monthly_withdrawal=withdrawal), _options())
        assert result.success_rate + result.ruin_probability <= 100.0
        assert result.soft_success_rate >= result.success_rate


def test_chunked_aggregation_matches_single_chunk():
    params = _plan()
    options = _options()
    whole = monte_carlo.aggregate([monte_carlo.run_chunk(params, options, 0, 20)], params, options)
    parts = [monte_carlo.run_chunk(params, options, 10, 10), monte_carlo.run_chunk(params, options, 0, 10)]
    split = monte_carlo.aggregate(parts, params, options)
    assert split.iterations == whole.iterations == 20
    assert split.success_rate == whole.success_rate
    assert split.end_percentiles == whole.end_percentiles
    for p in monte_carlo.PERCENTILES:
        np.testing.assert_allclose(split.percentiles[p], whole.percentiles[p])
    assert split.sorr == whole.sorr


def test_end_percentiles_match_last_month_of_bands():
    result = monte_carlo.run_monte_carlo(_plan(), _options(iterations=25))
    for p in monte_carlo.PERCENTILES:
        assert result.end_percentiles[p] == pytest.approx(result.percentiles[p][-1])
        assert result.end_percentiles_real[p] == pytest.approx(result.percentiles_real[p][-1])


def test_only_leading_paths_are_kept_as_samples():
    params, options = _plan(), _options()
    assert len(monte_carlo.run_chunk(params, options, 8, 4).sample_paths) == 2
    assert monte_carlo.run_chunk(params, options, 20, 3).sample_paths == []
    result = monte_carlo.aggregate(
        [monte_carlo.run_chunk(params, options, 10, 10), monte_carlo.run_chunk(params, options, 0, 10)],
        params,
        options,
    )
    assert len(result.sample_paths) == monte_carlo.MAX_SAMPLE_PATHS


def test_process_pool_matches_in_process_run():
    sequential = monte_carlo.run_monte_carlo(_plan(), _options(iterations=8, chunk_size=4))
    parallel = monte_carlo.run_monte_carlo(_plan(), _options(iterations=8, chunk_size=4, n_workers=2))
    assert parallel.success_rate == sequential.success_rate
    np.testing.assert_allclose(parallel.percentiles[50], sequential.percentiles[50])


def test_zero_volatility_collapses_bands():
    result = monte_carlo.run_monte_carlo(_plan(), _options(volatility=0.0, iterations=5))
    np.testing.assert_allclose(result.percentiles[5], result.percentiles[95])
    assert result.success_rate == 100.0
    assert result.ruin_probability == 0.0


def test_stress_scenario_lowers_final_wealth():
    base = monte_carlo.run_monte_carlo(_plan(), _options(volatility=0.0, iterations=1))
    crash = monte_carlo.run_monte_carlo(_plan(), _options(volatility=0.0, iterations=1, stress_scenario="early_crash"))
    assert crash.median_end < base.median_end


def test_classify_path_detects_ruin():
    params = _plan(start_invested=1000.0, start_cash=0.0, monthly_cash_contribution=0.0,
                   monthly_invested_contribution=0.0, accumulation_years=1, withdrawal_years=2)
    metrics = monte_carlo.classify_path(engine.simulate(params), params)
    assert metrics.ruin
    assert metrics.withdrawal_shortfall
    assert not metrics.success
    assert not metrics.soft_success


def test_classify_path_success_and_emergency_fill():
    params = _plan()
    metrics = monte_carlo.classify_path(engine.simulate(params), params, success_threshold=100.0)
    assert metrics.success
    assert not metrics.ruin
    assert metrics.first_fill_month is not None
    assert metrics.avg_withdrawal_net > 0


def test_sorr_needs_ten_samples():
    samples = [SorrSample(1000.0, 0.01 * i, 1000.0 + i) for i in range(9)]
    assert monte_carlo.aggregate_sorr(samples) == monte_carlo.SorrMetrics()


def test_sorr_impacts_and_correlation():
    samples = [SorrSample(1000.0, 0.01 * i, 1000.0 + 100.0 * i) for i in range(10)]
    sorr = monte_carlo.aggregate_sorr(samples)
    assert sorr.early_bad_impact == pytest.approx(40.0)
    assert sorr.early_good_impact == pytest.approx(40.0)
    assert sorr.risk_score == pytest.approx(80.0)
    assert sorr.correlation == pytest.approx(1.0)
    assert sorr.worst_sequence_end == pytest.approx(1050.0)
    assert sorr.best_sequence_end == pytest.approx(1850.0)


def test_progress_callback_reports_completion():
    calls = []
    monte_carlo.run_monte_carlo(_plan(), _options(iterations=12), progress_callback=lambda *a: calls.append(a))
    assert calls
    completed, total, elapsed = calls[-1]
    assert completed == total == 12
    assert elapsed >= 0


def test_cancellation_keeps_completed_paths():
    cancel = threading.Event()
    result = monte_carlo.run_monte_carlo(
        _plan(), _options(iterations=12), progress_callback=lambda *a: cancel.set(), cancel_event=cancel
    )
    assert result.cancelled
    assert result.iterations == 1


def test_chunk_stops_when_cancelled():
    cancel = threading.Event()
    done = []

    def path_done():
        done.append(1)
        if len(done) == 3:
            cancel.set()

    chunk = monte_carlo.run_chunk(_plan(), _options(), 0, 10, path_done=path_done, cancel_event=cancel)
    assert chunk.paths == 3
    assert chunk.monthly_totals.shape == (3, 180)


def test_cancel_before_start_raises():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(monte_carlo.MonteCarloCancelled):
        monte_carlo.run_monte_carlo(_plan(), _options(), cancel_event=cancel)


def test_options_are_validated():
    with pytest.raises(ScenarioValidationError):
        monte_carlo.run_monte_carlo(_plan(), _options(iterations=0))
    with pytest.raises(ScenarioValidationError):
        monte_carlo.run_monte_carlo(_plan(), _options(stress_scenario="meltdown"))
    assert MonteCarloOptions(iterations=50000).effective_iterations == monte_carlo.MAX_ITERATIONS
