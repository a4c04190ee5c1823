from typing import List

from ..calculators.monte_carlo import MonteCarloResult
from ..config import ScenarioParameters


def _outlook(success: float, iterations: int, years: int) -> str:
    if success >= 95:
        return f"Very good outlook: in {success:.1f}% of {iterations:,} simulations the money lasted all {years} years."
    if success >= 80:
        return f"Good outlook: in {success:.1f}% of the simulations wealth covered the full {years} years."
    if success >= 50:
        return (
            f"Elevated risk: only {success:.1f}% of the simulations still had money after {years} years. "
            "Consider a lower withdrawal rate or a longer savings phase."
        )
    return f"High risk: only {success:.1f}% of the simulations ended with money left. This plan is very risky."


def insight_lines(result: MonteCarloResult, params: ScenarioParameters) -> List[str]:
    """Rule-based observations about a Monte Carlo result, most important first."""
    years = params.accumulation_years + params.withdrawal_years
    lines = [_outlook(result.success_rate, result.iterations, years)]

    ruin = result.ruin_probability
    if ruin > 0:
        if ruin < 5:
            lines.append(f"The risk of running into trouble during the withdrawal phase is only {ruin:.1f}%.")
        elif ruin < 15:
            lines.append(f"The risk of ruin is {ruin:.1f}%; some caution is warranted.")
        else:
            lines.append(f"Warning: the risk of depleting the portfolio is {ruin:.1f}%.")

    if result.retirement_median > 0:
        lines.append(
            f"At retirement (after {params.accumulation_years} years) the median wealth is about "
            f"{result.retirement_median:,.0f} EUR."
        )
    if result.median_end_real > 0:
        lines.append(f"The inflation-adjusted median final wealth is {result.median_end_real:,.0f} EUR.")

    if params.cash_target > 0:
        fill = result.emergency_fill_probability
        years_to_fill = result.emergency_median_fill_years
        if fill >= 95:
            suffix = f" (median {years_to_fill:.1f} years)" if years_to_fill else ""
            lines.append(f"The cash target of {params.cash_target:,.0f} EUR is reached in {fill:.1f}% of cases{suffix}.")
        elif fill >= 80:
            suffix = f", typically after {years_to_fill:.1f} years" if years_to_fill else ""
            lines.append(f"The cash reserve is filled in {fill:.1f}% of the simulations{suffix}.")
        elif fill > 0:
            lines.append(
                f"The cash target is reached in only {fill:.1f}% of cases. Consider saving more into cash."
            )

    if result.sorr.risk_score > 30:
        lines.append(
            "Sequence-of-returns risk: early crashes in the withdrawal phase strongly affect final wealth "
            f"(correlation {abs(result.sorr.correlation) * 100:.1f}%)."
        )
    if result.cancelled:
        lines.append(f"The run was cancelled; figures are based on {result.iterations:,} completed paths.")
    return lines


def generate_insights(result: MonteCarloResult, params: ScenarioParameters) -> str:
    """Return a short plain-text summary of a Monte Carlo result."""
    return " ".join(insight_lines(result, params))
