"""ETF savings and withdrawal planner under German capital gains taxation.

>>> from etf_planner import ScenarioParameters, simulate
>>> run = simulate(ScenarioParameters(accumulation_years=1, withdrawal_years=1))
>>> len(run)
24
"""

from .config import ScenarioParameters, ScenarioValidationError
from .calculators.engine import MonthlySnapshot, SimulationOptions, SimulationRun, analyze_history, simulate
from .calculators.monte_carlo import (
    MonteCarloCancelled,
    MonteCarloOptions,
    MonteCarloResult,
    aggregate,
    run_chunk,
    run_monte_carlo,
)
from .calculators.optimizer import Candidate, GridConfig, OptimizationMode, optimize

__all__ = [
    "ScenarioParameters",
    "ScenarioValidationError",
    "MonthlySnapshot",
    "SimulationOptions",
    "SimulationRun",
    "analyze_history",
    "simulate",
    "MonteCarloCancelled",
    "MonteCarloOptions",
    "MonteCarloResult",
    "aggregate",
    "run_chunk",
    "run_monte_carlo",
    "Candidate",
    "GridConfig",
    "OptimizationMode",
    "optimize",
]
