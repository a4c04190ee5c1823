"""Tests for scenario parameters, presets and market tables."""

import pytest

from etf_planner import config
from etf_planner.config import ScenarioParameters, ScenarioValidationError


def test_defaults_are_valid():
    params = ScenarioParameters()
    assert params.validate() == []
    assert params.total_months == (36 + 30) * 12
    assert params.monthly_budget == 250.0
    assert params.taxable_fraction == 0.7


def test_withdrawal_modes_are_mutually_exclusive():
    both = ScenarioParameters(withdrawal_percent=0.04)
    assert any("exactly one" in e for e in both.validate())
    neither = ScenarioParameters(monthly_withdrawal=None)
    assert any("exactly one" in e for e in neither.validate())


def test_ensure_valid_lists_every_problem():
    params = ScenarioParameters(accumulation_years=0, withdrawal_years=0, fund_type="gold", initial_price=0)
    with pytest.raises(ScenarioValidationError) as excinfo:
        params.ensure_valid()
    assert len(excinfo.value.errors) == 3


def test_invalid_fractions_are_rejected():
    params = ScenarioParameters(
        capital_preservation_recovery=0.0,
        capital_preservation_reduction=1.5,
        church_tax="10",
    )
    errors = params.validate()
    assert len(errors) == 3


def test_from_dict_switches_to_percent_mode():
    params = ScenarioParameters.from_dict({"withdrawal_percent": 0.035, "accumulation_years": 20})
    assert params.monthly_withdrawal is None
    assert params.uses_percent_withdrawal
    assert params.validate() == []


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ScenarioValidationError):
        ScenarioParameters.from_dict({"savings_years": 10})


def test_presets_build_valid_plans():
    for name in config.SCENARIO_PRESETS:
        assert ScenarioParameters.from_preset(name).validate() == []
    fire = ScenarioParameters.from_preset("fire", monthly_withdrawal=2000.0)
    assert fire.withdrawal_percent is None
    assert fire.accumulation_months == 300
    education = ScenarioParameters.from_preset("education", withdrawal_percent=0.05)
    assert education.monthly_withdrawal is None
    with pytest.raises(ScenarioValidationError):
        ScenarioParameters.from_preset("yolo")


def test_baseline_rate_lookup():
    assert config.baseline_rate_for_year(2023, 0.01) == pytest.approx(0.0255)
    assert config.baseline_rate_for_year(2021, 0.01) < 0
    assert config.baseline_rate_for_year(2099, 0.01) == 0.01


def test_stress_scenarios():
    names = config.stress_scenario_names()
    assert names[0] == "none"
    assert {"early_crash", "sideways", "bear_market", "late_crash"} <= set(names)
    assert config.stress_returns("none") is None
    assert config.stress_returns("late_crash")[5] == pytest.approx(-0.35)
