"""Core calculators of the ETF savings planner.

* ``returns`` – seeded monthly return factors (deterministic, GBM and stress scenarios).
* ``taxes`` – German flat tax, tax lots, loss pot, allowance and the deemed distribution.
* ``preservation`` – capital preservation controller with a recovery band.
* ``engine`` – month-by-month simulation of one plan.
* ``monte_carlo`` – seeded path resampling, chunked aggregation and risk metrics.
* ``optimizer`` – grid search over saving splits, budgets and payouts.
* ``pension_comparison`` – company pension versus investing its net cost in an ETF.

Lower modules never import higher ones; ``engine`` is the only place where the
others are combined into a monthly run.
"""

from . import returns, taxes, preservation, engine, monte_carlo, optimizer, pension_comparison  # noqa: F401

__all__ = ["returns", "taxes", "preservation", "engine", "monte_carlo", "optimizer", "pension_comparison"]
