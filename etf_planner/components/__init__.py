"""Read-only views of engine, Monte Carlo and optimizer results."""

from .insights import generate_insights, insight_lines
from .tables import candidates_frame, percentile_frame, snapshots_frame, yearly_frame

__all__ = [
    "generate_insights",
    "insight_lines",
    "candidates_frame",
    "percentile_frame",
    "snapshots_frame",
    "yearly_frame",
]
