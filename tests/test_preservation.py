"""Tests for the capital preservation controller."""

import pytest

from etf_planner.calculators.preservation import CapitalPreservationController, PreservationState


def test_hysteresis_requires_recovery_band():
    ctl = CapitalPreservationController(threshold=0.8, reduction=0.25, recovery=0.1)
    assert ctl.update(85.0, 100.0) is PreservationState.NORMAL
    assert ctl.update(79.0, 100.0) is PreservationState.THROTTLED
    # back above the threshold but inside the band: still throttled
    assert ctl.update(85.0, 100.0) is PreservationState.THROTTLED
    assert ctl.update(89.9, 100.0) is PreservationState.THROTTLED
    assert ctl.update(90.0, 100.0) is PreservationState.NORMAL


def test_adjust_reduces_payout_and_counts_months():
    ctl = CapitalPreservationController(threshold=0.8, reduction=0.25, recovery=0.1)
    assert ctl.adjust(1000.0) == 1000.0
    ctl.update(50.0, 100.0)
    assert ctl.adjust(1000.0) == pytest.approx(750.0)
    assert ctl.adjust(1000.0) == pytest.approx(750.0)
    assert ctl.throttled_months == 2


def test_disabled_controller_never_throttles():
    ctl = CapitalPreservationController(0.8, 0.25, 0.1, enabled=False)
    ctl.update(1.0, 100.0)
    assert not ctl.active
    assert ctl.adjust(500.0) == 500.0


def test_zero_start_wealth_is_ignored():
    ctl = CapitalPreservationController(0.8, 0.25, 0.1)
    assert ctl.update(0.0, 0.0) is PreservationState.NORMAL


def test_recovery_band_must_be_positive():
    with pytest.raises(ValueError):
        CapitalPreservationController(0.8, 0.25, 0.0)
