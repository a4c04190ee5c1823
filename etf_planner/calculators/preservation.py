"""Capital preservation: throttle withdrawals while wealth is depleted.

The controller compares current wealth with the wealth at the start of the
withdrawal phase.  It switches to the throttled state once wealth drops below
``threshold`` of the start value and only switches back once wealth recovers to
``threshold + recovery``.  The gap between the two levels prevents the payout
from flipping every month around a single boundary.
"""

from __future__ import annotations

from enum import Enum


class PreservationState(str, Enum):
    NORMAL = "normal"
    THROTTLED = "throttled"


class CapitalPreservationController:
    def __init__(self, threshold: float, reduction: float, recovery: float, enabled: bool = True):
        if recovery <= 0:
            raise ValueError("recovery band must be positive")
        self.threshold = threshold
        self.reduction = reduction
        self.recovery = recovery
        self.enabled = enabled
        self.state = PreservationState.NORMAL
        self.throttled_months = 0

    @classmethod
    def for_scenario(cls, params) -> "CapitalPreservationController":
        return cls(
            params.capital_preservation_threshold,
            params.capital_preservation_reduction,
            params.capital_preservation_recovery,
            enabled=params.capital_preservation_enabled,
        )

    @property
    def active(self) -> bool:
        return self.state is PreservationState.THROTTLED

    def update(self, wealth: float, start_wealth: float) -> PreservationState:
        """Move to the state implied by ``wealth`` and return it."""
        if not self.enabled or start_wealth <= 0:
            return self.state
        if wealth < start_wealth * self.threshold:
            self.state = PreservationState.THROTTLED
        elif wealth >= start_wealth * (self.threshold + self.recovery):
            self.state = PreservationState.NORMAL
        return self.state

    def adjust(self, payout: float) -> float:
        """Apply the reduction to one month's payout while throttled."""
        if not self.active:
            return payout
        self.throttled_months += 1
        return payout * (1.0 - self.reduction)
