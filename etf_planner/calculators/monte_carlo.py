"""Monte Carlo analysis of a savings and withdrawal plan.

Each path is an independent :func:`~etf_planner.calculators.engine.simulate`
run with its own seed (``options.seed + path index``), so a chunk of paths can
be computed anywhere and in any order.  Chunks return raw data only; all
statistics are computed once over the concatenated raw data, which makes the
result independent of how the paths were split up.

Per path the run is classified:

* *positive end*: final wealth above the success threshold, which is expressed
  in today's money and scaled by the path's cumulative inflation;
* *ruin*: during the withdrawal phase wealth fell below ``ruin_threshold`` of
  the wealth at retirement, or a payout or tax bill could not be covered
  (beyond a tolerance of ``max(50 EUR, 1 % of the request)``);
* *success*: positive end, no ruin and no withdrawal shortfall.  *Soft success*
  ignores withdrawal shortfalls.

Sequence-of-returns risk compares the final wealth of the paths with the worst
and best early withdrawal-phase returns.
"""

from __future__ import annotations

import logging
import math
import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from ..config import MONTHS_PER_YEAR, ScenarioParameters, ScenarioValidationError, stress_returns
from .engine import SimulationOptions, SimulationRun, simulate
from .returns import make_rng

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 2000
MAX_ITERATIONS = 10000
DEFAULT_CHUNK_SIZE = 200
PERCENTILES = (5, 10, 25, 50, 75, 90, 95)

DEFAULT_SUCCESS_THRESHOLD_REAL = 100.0
SUCCESS_THRESHOLD_MONTHS = 12
DEFAULT_RUIN_THRESHOLD = 0.10
SHORTFALL_TOLERANCE_ABS = 50.0
SHORTFALL_TOLERANCE_REL = 0.01

SORR_WINDOW_YEARS = 5
SORR_MIN_SAMPLES = 10
MAX_SAMPLE_PATHS = 10
PROGRESS_INTERVAL_SECONDS = 0.1

ProgressCallback = Callable[[int, int, float], None]


class MonteCarloCancelled(RuntimeError):
    """Raised when a run is cancelled before any path completed."""


def default_worker_count() -> int:
    return min(max(2, (os.cpu_count() or 2) - 1), 8)


@dataclass(frozen=True)
class MonteCarloOptions:
    """Settings of a Monte Carlo run.

    ``success_threshold`` is in today's money; when omitted it is twelve
    monthly payouts for fixed-amount plans and 100 EUR otherwise.
    ``ruin_threshold`` is a fraction of the wealth at retirement.
    ``n_workers > 1`` distributes chunks over a process pool.
    """

    iterations: int = DEFAULT_ITERATIONS
    volatility: float = 0.15
    seed: Optional[int] = None
    success_threshold: Optional[float] = None
    ruin_threshold: float = DEFAULT_RUIN_THRESHOLD
    stress_scenario: str = "none"
    start_year: Optional[int] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    n_workers: int = 1
    progress_bar: bool = False

    @property
    def effective_iterations(self) -> int:
        return max(1, min(int(self.iterations), MAX_ITERATIONS))

    def validate(self) -> List[str]:
        errors = []
        if self.iterations < 1:
            errors.append("iterations must be at least 1")
        if self.volatility < 0:
            errors.append("volatility must not be negative")
        if not 0 <= self.ruin_threshold <= 1:
            errors.append("ruin_threshold must be in [0, 1]")
        if self.chunk_size < 1:
            errors.append("chunk_size must be at least 1")
        if self.n_workers < 1:
            errors.append("n_workers must be at least 1")
        if self.seed is not None and self.seed < 0:
            errors.append("seed must not be negative")
        return errors

    def simulation_options(self, seed: Optional[int] = None) -> SimulationOptions:
        return SimulationOptions(stress_scenario=self.stress_scenario, start_year=self.start_year, seed=seed)


def _resolve_options(options: MonteCarloOptions) -> MonteCarloOptions:
    """Fix the seed and start year so every chunk sees the same values."""
    errors = options.validate()
    if errors:
        raise ScenarioValidationError(errors)
    stress_returns(options.stress_scenario)
    seed = options.seed
    if seed is None:
        seed = int(np.random.default_rng().integers(0, 2**31 - 1))
        logger.info("no seed given, using %d", seed)
    start_year = options.start_year
    if start_year is None:
        start_year = SimulationOptions().resolved_start_year()
    return replace(options, seed=seed, start_year=start_year)


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolation percentile, the rule ``np.percentile`` applies to the bands; 0 when empty."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(values, p))


def default_success_threshold(params: ScenarioParameters) -> float:
    if not params.uses_percent_withdrawal and params.monthly_withdrawal:
        return params.monthly_withdrawal * SUCCESS_THRESHOLD_MONTHS
    return DEFAULT_SUCCESS_THRESHOLD_REAL


def _retirement_position(run: SimulationRun, params: ScenarioParameters) -> Tuple[float, float]:
    """Nominal and real wealth at the end of the accumulation phase."""
    if params.accumulation_months == 0:
        start = params.start_cash + params.start_invested
        return start, start
    snap = run[min(params.accumulation_months, len(run)) - 1]
    return snap.total, snap.total_real


# --- per path ------------------------------------------------------------


@dataclass(frozen=True)
class PathMetrics:
    positive_end: bool
    accumulation_shortfall: bool
    withdrawal_shortfall: bool
    ruin: bool
    capital_preserved: bool
    capital_preserved_real: bool
    # month in which the cash target was first reached, None if never
    first_fill_month: Optional[int]
    avg_withdrawal_net: float = 0.0
    avg_withdrawal_net_real: float = 0.0
    total_withdrawal_gross: float = 0.0
    total_withdrawal_gross_real: float = 0.0

    @property
    def success(self) -> bool:
        return self.positive_end and not self.withdrawal_shortfall and not self.ruin

    @property
    def soft_success(self) -> bool:
        return self.positive_end and not self.ruin


def classify_path(
    run: SimulationRun,
    params: ScenarioParameters,
    success_threshold: Optional[float] = None,
    ruin_threshold: float = DEFAULT_RUIN_THRESHOLD,
) -> PathMetrics:
    """Success, ruin, shortfall and emergency-fund metrics of one path."""
    accumulation_months = min(params.accumulation_months, len(run))
    threshold_real = default_success_threshold(params) if success_threshold is None else success_threshold
    last = run[-1]
    positive_end = last.total > threshold_real * last.cumulative_inflation

    if params.cash_target <= 0:
        first_fill = 0
    else:
        first_fill = next((s.month for s in run if s.cash >= params.cash_target), None)

    accumulation_shortfall = any(
        s.shortfall > SHORTFALL_TOLERANCE_ABS or s.tax_shortfall > SHORTFALL_TOLERANCE_ABS
        for s in run[:accumulation_months]
    )

    retirement_wealth, retirement_wealth_real = _retirement_position(run, params)
    ruin_level = retirement_wealth * ruin_threshold
    withdrawal_shortfall = False
    ruin = False
    for s in run[accumulation_months:]:
        tolerance = max(SHORTFALL_TOLERANCE_ABS, s.withdrawal_requested * SHORTFALL_TOLERANCE_REL)
        significant = s.shortfall > tolerance or s.tax_shortfall > tolerance
        withdrawal_shortfall = withdrawal_shortfall or significant
        if s.total < ruin_level or significant:
            ruin = True
        if ruin and withdrawal_shortfall:
            break

    paying = [s for s in run[accumulation_months:] if s.withdrawal > 0 or s.withdrawal_net > 0]
    if paying:
        avg_net = sum(s.withdrawal_net for s in paying) / len(paying)
        avg_net_real = sum(s.withdrawal_net_real for s in paying) / len(paying)
        total_gross = sum(s.withdrawal for s in run)
        total_gross_real = sum(s.withdrawal_real for s in run)
    else:
        avg_net = avg_net_real = total_gross = total_gross_real = 0.0

    return PathMetrics(
        positive_end=positive_end,
        accumulation_shortfall=accumulation_shortfall,
        withdrawal_shortfall=withdrawal_shortfall,
        ruin=ruin,
        capital_preserved=last.total >= retirement_wealth,
        capital_preserved_real=last.total_real >= retirement_wealth_real,
        first_fill_month=first_fill,
        avg_withdrawal_net=avg_net,
        avg_withdrawal_net_real=avg_net_real,
        total_withdrawal_gross=total_gross,
        total_withdrawal_gross_real=total_gross_real,
    )


# --- sequence of returns risk ---------------------------------------------


@dataclass(frozen=True)
class SorrSample:
    start_wealth: float
    early_return: float
    end_wealth: float


@dataclass(frozen=True)
class SorrMetrics:
    risk_score: float = 0.0
    early_bad_impact: float = 0.0
    early_good_impact: float = 0.0
    correlation: float = 0.0
    worst_sequence_end: float = 0.0
    best_sequence_end: float = 0.0
    vulnerability_window: int = SORR_WINDOW_YEARS


def extract_sorr_sample(run: SimulationRun, params: ScenarioParameters) -> Optional[SorrSample]:
    """Annualized time-weighted return of the first withdrawal years.

    Paths without withdrawal months or without wealth at retirement carry no
    information about sequence risk and yield ``None``.
    """
    accumulation_months = params.accumulation_months
    window = min(SORR_WINDOW_YEARS, params.withdrawal_years) * MONTHS_PER_YEAR
    if window == 0 or len(run) <= accumulation_months:
        return None
    start_wealth, _ = _retirement_position(run, params)
    if start_wealth <= 0:
        return None
    factors = [s.portfolio_return for s in run[accumulation_months:accumulation_months + window]]
    twr = float(np.prod(factors))
    early_return = twr ** (MONTHS_PER_YEAR / len(factors)) - 1
    return SorrSample(start_wealth, early_return, run[-1].total)


def aggregate_sorr(samples: Sequence[SorrSample]) -> SorrMetrics:
    if len(samples) < SORR_MIN_SAMPLES:
        return SorrMetrics()
    ordered = sorted(samples, key=lambda s: s.early_return)
    quintile = len(ordered) // 5
    ends = np.array([s.end_wealth for s in ordered])
    early = np.array([s.early_return for s in ordered])

    avg_all = ends.mean()
    avg_worst = ends[:quintile].mean()
    avg_best = ends[-quintile:].mean()
    avg_start = float(np.mean([s.start_wealth for s in ordered]))
    bad = (avg_all - avg_worst) / avg_start * 100 if avg_start > 0 else 0.0
    good = (avg_best - avg_all) / avg_start * 100 if avg_start > 0 else 0.0

    n = len(ordered)
    numerator = n * np.dot(early, ends) - early.sum() * ends.sum()
    spread = (n * np.dot(early, early) - early.sum() ** 2) * (n * np.dot(ends, ends) - ends.sum() ** 2)
    correlation = numerator / math.sqrt(spread) if spread > 0 else 0.0

    return SorrMetrics(
        risk_score=abs(bad + good),
        early_bad_impact=float(bad),
        early_good_impact=float(good),
        correlation=float(correlation),
        worst_sequence_end=float(avg_worst),
        best_sequence_end=float(avg_best),
    )


# --- chunks ----------------------------------------------------------------


@dataclass
class MonteCarloRawData:
    """Unaggregated output of a contiguous range of paths."""

    start_index: int
    final_totals: np.ndarray
    final_totals_real: np.ndarray
    final_loss_pot: np.ndarray
    final_allowance_used: np.ndarray
    retirement_totals: np.ndarray
    retirement_totals_real: np.ndarray
    # (paths, months) wealth matrices
    monthly_totals: np.ndarray
    monthly_totals_real: np.ndarray
    path_metrics: List[PathMetrics] = field(default_factory=list)
    sorr_samples: List[SorrSample] = field(default_factory=list)
    sample_paths: List[SimulationRun] = field(default_factory=list)

    @property
    def paths(self) -> int:
        return len(self.final_totals)


def chunk_bounds(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    """``(start_index, count)`` pairs covering ``total`` paths."""
    return [(start, min(chunk_size, total - start)) for start in range(0, total, chunk_size)]


def run_chunk(
    params: ScenarioParameters,
    options: MonteCarloOptions,
    start_index: int,
    count: int,
    path_done: Optional[Callable[[], None]] = None,
    cancel_event=None,
) -> MonteCarloRawData:
    """Simulate paths ``start_index .. start_index + count - 1``.

    ``options.seed`` must be set; path ``i`` uses seed ``options.seed + i``.
    When ``cancel_event`` is set the chunk stops and returns the paths
    completed so far.
    """
    if options.seed is None:
        raise ValueError("run_chunk requires a fixed seed")
    months = params.total_months
    finals, finals_real, loss_pots, allowances = [], [], [], []
    retirements, retirements_real = [], []
    monthly = np.empty((count, months))
    monthly_real = np.empty((count, months))
    metrics: List[PathMetrics] = []
    sorr: List[SorrSample] = []
    samples: List[SimulationRun] = []

    done = 0
    for i in range(count):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancellation requested, chunk at %d stops after %d paths", start_index, done)
            break
        seed = options.seed + start_index + i
        run = simulate(params, options.volatility, options.simulation_options(seed), rng=make_rng(seed))

        last = run[-1]
        finals.append(last.total)
        finals_real.append(last.total_real)
        loss_pots.append(last.loss_pot)
        allowances.append(last.allowance_used)
        retirement, retirement_real = _retirement_position(run, params)
        retirements.append(retirement)
        retirements_real.append(retirement_real)
        monthly[i] = run.column("total")
        monthly_real[i] = run.column("total_real")
        metrics.append(classify_path(run, params, options.success_threshold, options.ruin_threshold))
        sample = extract_sorr_sample(run, params)
        if sample is not None:
            sorr.append(sample)
        if start_index + i < MAX_SAMPLE_PATHS:
            samples.append(run)
        done += 1
        if path_done is not None:
            path_done()

    return MonteCarloRawData(
        start_index=start_index,
        final_totals=np.array(finals, dtype=float),
        final_totals_real=np.array(finals_real, dtype=float),
        final_loss_pot=np.array(loss_pots, dtype=float),
        final_allowance_used=np.array(allowances, dtype=float),
        retirement_totals=np.array(retirements, dtype=float),
        retirement_totals_real=np.array(retirements_real, dtype=float),
        monthly_totals=monthly[:done],
        monthly_totals_real=monthly_real[:done],
        path_metrics=metrics,
        sorr_samples=sorr,
        sample_paths=samples,
    )


# --- aggregation -------------------------------------------------------------


@dataclass(frozen=True)
class MonteCarloResult:
    iterations: int
    months: np.ndarray
    # percentile -> per-month values
    percentiles: Dict[int, np.ndarray]
    percentiles_real: Dict[int, np.ndarray]
    accumulation_years: int
    mean_end: float
    end_percentiles: Dict[int, float]
    mean_end_real: float
    end_percentiles_real: Dict[int, float]
    retirement_median: float
    retirement_median_real: float
    median_avg_withdrawal_net: float
    median_avg_withdrawal_net_real: float
    median_total_withdrawal_gross: float
    median_total_withdrawal_gross_real: float
    # rates are percentages
    success_rate: float
    soft_success_rate: float
    ruin_probability: float
    capital_preservation_rate: float
    capital_preservation_rate_real: float
    accumulation_shortfall_rate: float
    withdrawal_shortfall_rate: float
    emergency_fill_probability: float
    emergency_never_fill_probability: float
    emergency_median_fill_years: Optional[float]
    median_final_loss_pot: float
    median_final_allowance_used: float
    sorr: SorrMetrics
    sample_paths: List[SimulationRun]
    options: MonteCarloOptions
    cancelled: bool = False

    @property
    def median_end(self) -> float:
        return self.end_percentiles[50]

    @property
    def median_end_real(self) -> float:
        return self.end_percentiles_real[50]


def _median_of_positive(values) -> float:
    positive = sorted(v for v in values if v > 0)
    return percentile(positive, 50) if positive else 0.0


def aggregate(
    chunks: Sequence[MonteCarloRawData],
    params: ScenarioParameters,
    options: MonteCarloOptions,
    cancelled: bool = False,
) -> MonteCarloResult:
    """Combine chunk raw data and compute all statistics."""
    chunks = sorted((c for c in chunks if c.paths), key=lambda c: c.start_index)
    if not chunks:
        raise ValueError("no completed paths to aggregate")

    def cat(name):
        return np.sort(np.concatenate([getattr(c, name) for c in chunks]))

    finals = cat("final_totals")
    finals_real = cat("final_totals_real")
    loss_pots = cat("final_loss_pot")
    allowances = cat("final_allowance_used")
    retirements = cat("retirement_totals")
    retirements_real = cat("retirement_totals_real")
    monthly = np.vstack([c.monthly_totals for c in chunks])
    monthly_real = np.vstack([c.monthly_totals_real for c in chunks])
    metrics = [m for c in chunks for m in c.path_metrics]
    sorr = [s for c in chunks for s in c.sorr_samples]
    samples = [r for c in chunks for r in c.sample_paths][:MAX_SAMPLE_PATHS]

    n = len(finals)

    def rate(count: int) -> float:
        return count / n * 100

    curves = np.percentile(monthly, PERCENTILES, axis=0)
    curves_real = np.percentile(monthly_real, PERCENTILES, axis=0)
    fill_years = sorted(m.first_fill_month / MONTHS_PER_YEAR for m in metrics if m.first_fill_month is not None)

    result = MonteCarloResult(
        iterations=n,
        months=np.arange(1, params.total_months + 1),
        percentiles={p: curves[i] for i, p in enumerate(PERCENTILES)},
        percentiles_real={p: curves_real[i] for i, p in enumerate(PERCENTILES)},
        accumulation_years=params.accumulation_years,
        mean_end=float(finals.mean()),
        end_percentiles={p: percentile(finals, p) for p in PERCENTILES},
        mean_end_real=float(finals_real.mean()),
        end_percentiles_real={p: percentile(finals_real, p) for p in PERCENTILES},
        retirement_median=percentile(retirements, 50),
        retirement_median_real=percentile(retirements_real, 50),
        median_avg_withdrawal_net=_median_of_positive(m.avg_withdrawal_net for m in metrics),
        median_avg_withdrawal_net_real=_median_of_positive(m.avg_withdrawal_net_real for m in metrics),
        median_total_withdrawal_gross=_median_of_positive(m.total_withdrawal_gross for m in metrics),
        median_total_withdrawal_gross_real=_median_of_positive(m.total_withdrawal_gross_real for m in metrics),
        success_rate=rate(sum(m.success for m in metrics)),
        soft_success_rate=rate(sum(m.soft_success for m in metrics)),
        ruin_probability=rate(sum(m.ruin for m in metrics)),
        capital_preservation_rate=rate(sum(m.capital_preserved for m in metrics)),
        capital_preservation_rate_real=rate(sum(m.capital_preserved_real for m in metrics)),
        accumulation_shortfall_rate=rate(sum(m.accumulation_shortfall for m in metrics)),
        withdrawal_shortfall_rate=rate(sum(m.withdrawal_shortfall for m in metrics)),
        emergency_fill_probability=rate(len(fill_years)),
        emergency_never_fill_probability=rate(n - len(fill_years)),
        emergency_median_fill_years=percentile(fill_years, 50) if fill_years else None,
        median_final_loss_pot=percentile(loss_pots, 50),
        median_final_allowance_used=percentile(allowances, 50),
        sorr=aggregate_sorr(sorr),
        sample_paths=samples,
        options=options,
        cancelled=cancelled,
    )
    logger.debug("aggregated %d paths from %d chunks", n, len(chunks))
    return result


# --- driver ----------------------------------------------------------------


class _ProgressReporter:
    """Throttled progress callback plus an optional tqdm bar."""

    def __init__(self, total: int, callback: Optional[ProgressCallback], show_bar: bool):
        self.total = total
        self.callback = callback
        self.completed = 0
        self.started = time.monotonic()
        self._last_emit = 0.0
        self._bar = tqdm(total=total, desc="Monte Carlo paths", disable=not show_bar)

    def advance(self, n: int = 1) -> None:
        self.completed += n
        self._bar.update(n)
        if self.callback is None:
            return
        now = time.monotonic()
        if self.completed >= self.total or now - self._last_emit >= PROGRESS_INTERVAL_SECONDS:
            self._last_emit = now
            self.callback(self.completed, self.total, now - self.started)

    def close(self) -> None:
        self._bar.close()


def _run_sequential(params, options, bounds, reporter, cancel_event):
    chunks = []
    for start, count in bounds:
        chunk = run_chunk(params, options, start, count, path_done=reporter.advance, cancel_event=cancel_event)
        chunks.append(chunk)
        if cancel_event is not None and cancel_event.is_set():
            return chunks, True
    return chunks, False


def _run_parallel(params, options, bounds, reporter, cancel_event):
    chunks = []
    cancelled = False
    with ProcessPoolExecutor(max_workers=options.n_workers) as executor:
        futures = [executor.submit(run_chunk, params, options, start, count) for start, count in bounds]
        for future in as_completed(futures):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Cancellation requested, dropping unfinished chunks")
                for f in futures:
                    f.cancel()
                cancelled = True
                break
            chunk = future.result()
            chunks.append(chunk)
            reporter.advance(chunk.paths)
    return chunks, cancelled


def run_monte_carlo(
    params: ScenarioParameters,
    options: Optional[MonteCarloOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event=None,
) -> MonteCarloResult:
    """Run ``options.iterations`` seeded paths and aggregate them.

    Parameters
    ----------
    params : ScenarioParameters
        The plan to analyse.
    options : MonteCarloOptions, optional
        Run settings; a random base seed is drawn when ``options.seed`` is
        ``None`` and logged.
    progress_callback : callable, optional
        Called with ``(completed, total, elapsed_seconds)``, at most every
        0.1 seconds and once on completion.
    cancel_event : threading.Event, optional
        Checked between paths (in-process) or between chunks (process pool).
        A cancelled run returns the completed paths with ``cancelled=True``.

    Raises
    ------
    ScenarioValidationError
        If the parameters or options are invalid.
    MonteCarloCancelled
        If cancellation happened before any path completed.
    """
    params.ensure_valid()
    options = _resolve_options(options or MonteCarloOptions())
    total = options.effective_iterations
    if total < options.iterations:
        logger.warning("iterations capped at %d", MAX_ITERATIONS)
    bounds = chunk_bounds(total, options.chunk_size)
    logger.info(
        "Monte Carlo: %d paths in %d chunks, volatility %.3f, seed %d, workers %d",
        total,
        len(bounds),
        options.volatility,
        options.seed,
        options.n_workers,
    )

    reporter = _ProgressReporter(total, progress_callback, options.progress_bar)
    try:
        if options.n_workers > 1 and len(bounds) > 1:
            chunks, cancelled = _run_parallel(params, options, bounds, reporter, cancel_event)
        else:
            chunks, cancelled = _run_sequential(params, options, bounds, reporter, cancel_event)
    finally:
        reporter.close()

    if sum(c.paths for c in chunks) == 0:
        raise MonteCarloCancelled("Monte Carlo run cancelled before any path completed")
    result = aggregate(chunks, params, options, cancelled=cancelled)
    logger.info(
        "Monte Carlo finished: %d paths in %.2fs, success %.1f%%, ruin %.1f%%",
        result.iterations,
        time.monotonic() - reporter.started,
        result.success_rate,
        result.ruin_probability,
    )
    return result
