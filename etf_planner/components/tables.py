"""Tabular views of simulation output.

Consumers that plot or export results work with :mod:`pandas` frames; these
helpers only read the public result types and never change them.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Dict, Iterable, List

import pandas as pd

from ..calculators.engine import SimulationRun
from ..calculators.monte_carlo import MonteCarloResult
from ..calculators.optimizer import Candidate


def snapshots_frame(run: SimulationRun) -> pd.DataFrame:
    """One row per simulated month, indexed by month."""
    df = pd.DataFrame([asdict(s) for s in run])
    return df.set_index("month")


def yearly_frame(run: SimulationRun) -> pd.DataFrame:
    """Aggregate monthly flows per year; balances are taken from December."""
    df = snapshots_frame(run)
    flows = [
        "cash_contribution",
        "invested_contribution",
        "cash_interest",
        "withdrawal",
        "withdrawal_net",
        "shortfall",
        "tax_paid",
        "deemed_distribution_tax",
        "return_gain",
    ]
    balances = ["phase", "cash", "invested", "total", "total_real", "loss_pot", "cumulative_inflation"]
    grouped = df.groupby("year")
    return grouped[flows].sum().join(grouped[balances].last())


def percentile_frame(result: MonteCarloResult, real: bool = False) -> pd.DataFrame:
    """Per-month wealth percentiles with columns ``p5`` .. ``p95``."""
    curves = result.percentiles_real if real else result.percentiles
    data = {f"p{p}": values for p, values in sorted(curves.items())}
    return pd.DataFrame(data, index=pd.Index(result.months, name="month"))


def candidates_frame(candidates: Iterable[Candidate]) -> pd.DataFrame:
    rows = []
    for c in candidates:
        p = c.parameters
        row = {
            "index": c.index,
            "score": c.score,
            "qualified": c.qualified,
            "monthly_cash_contribution": p.monthly_cash_contribution,
            "monthly_invested_contribution": p.monthly_invested_contribution,
            "monthly_withdrawal": p.monthly_withdrawal,
            "withdrawal_percent": p.withdrawal_percent,
        }
        row.update(c.summary)
        rows.append(row)
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    return df.sort_values(["score", "index"], ascending=[False, True]).reset_index(drop=True)


def sensitivity_frame(rows: List[Dict], field: str) -> pd.DataFrame:
    """Rows of :func:`pension_comparison.sensitivity_analysis`, indexed by the varied input."""
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    return df.set_index(field)
