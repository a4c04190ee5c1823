"""Grid search over plan variants.

Two modes are supported:

* ``MAXIMIZE_WITHDRAWAL`` keeps the monthly saving budget fixed and searches
  the split between cash and fund contributions together with the payout
  (a fixed monthly amount or an annual percentage, whichever the base plan
  uses);
* ``MINIMIZE_BUDGET`` keeps the payout fixed and searches the smallest saving
  budget and its split.

Every candidate is scored from its Monte Carlo result.  Candidates below the
target success rate, or that never reach a non-zero cash target, score
``-inf`` and can never be selected.  Candidate ``i`` is simulated with base
seed ``seed + i`` so that repeated searches are reproducible.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config import ScenarioParameters, ScenarioValidationError
from .monte_carlo import MonteCarloCancelled, MonteCarloOptions, MonteCarloResult, run_monte_carlo

logger = logging.getLogger(__name__)

DEFAULT_OPTIMIZER_ITERATIONS = 1000
MAX_OPTIMIZER_ITERATIONS = 2000
DEFAULT_OPTIMIZER_SEED = 42


class OptimizationMode(str, Enum):
    MAXIMIZE_WITHDRAWAL = "A"
    MINIMIZE_BUDGET = "B"

    @classmethod
    def parse(cls, value) -> "OptimizationMode":
        if isinstance(value, cls):
            return value
        aliases = {"A": cls.MAXIMIZE_WITHDRAWAL, "budget_fix": cls.MAXIMIZE_WITHDRAWAL,
                   "B": cls.MINIMIZE_BUDGET, "rent_fix": cls.MINIMIZE_BUDGET}
        if value not in aliases:
            raise ScenarioValidationError([f"unknown optimization mode {value!r}"])
        return aliases[value]


@dataclass(frozen=True)
class GridConfig:
    target_success: float = 90.0
    # total monthly saving budget; defaults to the base plan's budget
    max_budget: Optional[float] = None
    cash_step: float = 50.0
    withdrawal_step: float = 50.0
    withdrawal_step_percent: float = 0.0025
    withdrawal_range: float = 0.5
    budget_step: float = 25.0
    budget_range: float = 0.5
    split_step: float = 0.25
    max_combinations: int = 60
    emergency_weight: float = 4000.0
    emergency_max_years: float = 10.0
    # percent, like MonteCarloResult rates
    min_fill_probability: float = 0.0
    hard_min_fill: bool = False
    min_fill_penalty: float = 1e6


def _steps(low: float, high: float, step: float) -> List[float]:
    if step <= 0 or high < low:
        return []
    count = int(math.floor((high - low) / step + 1e-9)) + 1
    return [min(low + i * step, high) for i in range(count)]


def _round_half_up(value: float, digits: int = 0) -> float:
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def generate_candidates(
    base: ScenarioParameters, mode=OptimizationMode.MAXIMIZE_WITHDRAWAL, grid: Optional[GridConfig] = None
) -> List[ScenarioParameters]:
    """Plan variants to evaluate, at most ``grid.max_combinations``."""
    grid = grid or GridConfig()
    mode = OptimizationMode.parse(mode)
    budget = base.monthly_budget if grid.max_budget is None else grid.max_budget
    candidates: List[ScenarioParameters] = []

    if mode is OptimizationMode.MAXIMIZE_WITHDRAWAL:
        if base.uses_percent_withdrawal:
            current = base.withdrawal_percent
            low = max(0.01, current * (1 - grid.withdrawal_range))
            high = min(0.08, current * (1 + grid.withdrawal_range))
            payouts = [
                {"withdrawal_percent": _round_half_up(p, 4), "monthly_withdrawal": None}
                for p in _steps(low, high, grid.withdrawal_step_percent)
            ]
        else:
            current = base.monthly_withdrawal or 1000.0
            low = max(100.0, current * (1 - grid.withdrawal_range))
            high = current * (1 + grid.withdrawal_range)
            payouts = [
                {"monthly_withdrawal": _round_half_up(w), "withdrawal_percent": None}
                for w in _steps(low, high, grid.withdrawal_step)
            ]
        for cash in _steps(0.0, budget, grid.cash_step):
            for payout in payouts:
                candidates.append(
                    replace(
                        base,
                        monthly_cash_contribution=cash,
                        monthly_invested_contribution=max(0.0, budget - cash),
                        **payout,
                    )
                )
                if len(candidates) >= grid.max_combinations:
                    return candidates
    else:
        low = max(50.0, budget * (1 - grid.budget_range))
        high = budget * (1 + grid.budget_range)
        for total in _steps(low, high, grid.budget_step):
            for ratio in _steps(0.0, 1.0, grid.split_step):
                cash = _round_half_up(total * ratio)
                candidates.append(
                    replace(
                        base,
                        monthly_cash_contribution=cash,
                        monthly_invested_contribution=_round_half_up(total - cash),
                    )
                )
                if len(candidates) >= grid.max_combinations:
                    return candidates
    return candidates


@dataclass(frozen=True)
class EmergencyEvaluation:
    disqualify: bool
    contribution: float
    fill_probability: float
    median_fill_years: Optional[float]
    quality: Optional[float] = None


def evaluate_emergency(
    candidate: ScenarioParameters, summary: Dict, grid: Optional[GridConfig] = None
) -> EmergencyEvaluation:
    """Score how reliably and how fast the cash target is reached.

    The quality blends fill probability (60 %) and fill speed relative to
    ``emergency_max_years`` (40 %).
    """
    grid = grid or GridConfig()
    has_goal = candidate.cash_target > 0
    fill_probability = summary.get("emergency_fill_probability") or 0.0
    median_years = summary.get("emergency_median_fill_years")

    if has_goal and fill_probability == 0:
        return EmergencyEvaluation(True, -math.inf, fill_probability, median_years)

    penalty = 0.0
    if has_goal and grid.min_fill_probability > 0 and fill_probability < grid.min_fill_probability:
        if grid.hard_min_fill:
            return EmergencyEvaluation(True, -math.inf, fill_probability, median_years)
        penalty = grid.min_fill_penalty

    prob_factor = min(max(fill_probability / 100, 0.0), 1.0) if has_goal else 1.0
    speed = 1.0
    if has_goal:
        if median_years is None:
            speed = 0.0
        else:
            max_years = grid.emergency_max_years
            speed = min(max((max_years - median_years) / max_years, 0.0), 1.0)
    quality = 0.6 * prob_factor + 0.4 * speed
    return EmergencyEvaluation(False, quality * grid.emergency_weight - penalty, fill_probability, median_years, quality)


def _secondary_terms(summary: Dict) -> float:
    return (summary.get("median_end_real") or 0.0) / 10000 - (summary.get("ruin_probability") or 0.0) * 2


def score_candidate(candidate: ScenarioParameters, summary: Dict, grid: Optional[GridConfig] = None) -> float:
    """Score for ``MAXIMIZE_WITHDRAWAL``: a higher payout wins."""
    grid = grid or GridConfig()
    if summary["success_rate"] < grid.target_success:
        return -math.inf
    emergency = evaluate_emergency(candidate, summary, grid)
    if emergency.disqualify:
        return -math.inf
    if candidate.uses_percent_withdrawal:
        # 1000 points per percentage point
        score = candidate.withdrawal_percent * 100 * 1000
    else:
        score = (candidate.monthly_withdrawal or 0.0) * 10
    return score + _secondary_terms(summary) + emergency.contribution


def score_candidate_budget(candidate: ScenarioParameters, summary: Dict, grid: Optional[GridConfig] = None) -> float:
    """Score for ``MINIMIZE_BUDGET``: a lower monthly budget wins."""
    grid = grid or GridConfig()
    if summary["success_rate"] < grid.target_success:
        return -math.inf
    emergency = evaluate_emergency(candidate, summary, grid)
    if emergency.disqualify:
        return -math.inf
    return -candidate.monthly_budget * 10 + _secondary_terms(summary) + emergency.contribution


def scoring_function(mode) -> Callable[[ScenarioParameters, Dict, Optional[GridConfig]], float]:
    if OptimizationMode.parse(mode) is OptimizationMode.MINIMIZE_BUDGET:
        return score_candidate_budget
    return score_candidate


def summarize(result: MonteCarloResult) -> Dict:
    """The subset of a Monte Carlo result kept per candidate."""
    return {
        "success_rate": result.success_rate,
        "ruin_probability": result.ruin_probability,
        "median_end": result.median_end,
        "median_end_real": result.median_end_real,
        "capital_preservation_rate": result.capital_preservation_rate,
        "capital_preservation_rate_real": result.capital_preservation_rate_real,
        "retirement_median": result.retirement_median,
        "retirement_median_real": result.retirement_median_real,
        "p10_end_real": result.end_percentiles_real[10],
        "p90_end_real": result.end_percentiles_real[90],
        "emergency_fill_probability": result.emergency_fill_probability,
        "emergency_never_fill_probability": result.emergency_never_fill_probability,
        "emergency_median_fill_years": result.emergency_median_fill_years,
    }


@dataclass(frozen=True)
class Candidate:
    index: int
    parameters: ScenarioParameters
    score: float
    summary: Dict

    @property
    def qualified(self) -> bool:
        return math.isfinite(self.score)


def _candidate_options(mc_options: Optional[MonteCarloOptions]) -> MonteCarloOptions:
    if mc_options is None:
        return MonteCarloOptions(iterations=DEFAULT_OPTIMIZER_ITERATIONS, seed=DEFAULT_OPTIMIZER_SEED)
    return replace(
        mc_options,
        iterations=min(mc_options.iterations, MAX_OPTIMIZER_ITERATIONS),
        seed=DEFAULT_OPTIMIZER_SEED if mc_options.seed is None else mc_options.seed,
    )


def evaluate_candidates(
    base: ScenarioParameters,
    mode=OptimizationMode.MAXIMIZE_WITHDRAWAL,
    grid: Optional[GridConfig] = None,
    mc_options: Optional[MonteCarloOptions] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event=None,
) -> List[Candidate]:
    """Simulate and score every grid candidate in order.

    Stops early, returning the candidates evaluated so far, when
    ``cancel_event`` is set.  The event is also checked between Monte Carlo
    paths; a candidate interrupted that way is dropped without a score.
    """
    grid = grid or GridConfig()
    mode = OptimizationMode.parse(mode)
    base.ensure_valid()
    options = _candidate_options(mc_options)
    score = scoring_function(mode)
    grid_points = generate_candidates(base, mode, grid)
    logger.info(
        "optimizing %s over %d candidates (%d paths each, target success %.1f%%)",
        mode.name,
        len(grid_points),
        options.effective_iterations,
        grid.target_success,
    )

    evaluated: List[Candidate] = []
    for index, params in enumerate(grid_points):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancellation requested after %d candidates", index)
            break
        try:
            result = run_monte_carlo(params, replace(options, seed=options.seed + index), cancel_event=cancel_event)
        except MonteCarloCancelled:
            logger.info("Cancellation requested before candidate #%d completed a path", index)
            break
        if result.cancelled:
            logger.info("Cancellation requested during candidate #%d, partial result dropped", index)
            break
        summary = summarize(result)
        evaluated.append(Candidate(index, params, score(params, summary, grid), summary))
        if progress_callback is not None:
            progress_callback(index + 1, len(grid_points))
    return evaluated


def select_best(candidates: List[Candidate]) -> Optional[Candidate]:
    """Highest finite score; on ties the earlier candidate wins."""
    best: Optional[Candidate] = None
    for candidate in candidates:
        if not candidate.qualified:
            continue
        if best is None or candidate.score > best.score:
            best = candidate
    return best


def optimize(
    base: ScenarioParameters,
    mode=OptimizationMode.MAXIMIZE_WITHDRAWAL,
    grid: Optional[GridConfig] = None,
    mc_options: Optional[MonteCarloOptions] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event=None,
) -> Optional[Candidate]:
    """Best candidate of the grid search, ``None`` if no candidate qualifies."""
    candidates = evaluate_candidates(base, mode, grid, mc_options, progress_callback, cancel_event)
    best = select_best(candidates)
    if best is None:
        logger.info("no candidate reached the target success rate")
    else:
        logger.info("best candidate #%d scored %.2f (success %.1f%%)", best.index, best.score, best.summary["success_rate"])
    return best
