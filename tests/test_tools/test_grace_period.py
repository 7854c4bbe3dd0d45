"""
Tests for the Grace Period Resolver
"""

import pytest
from datetime import date

from models import RiskClass
from tools.grace_period import GracePolicy, base_grace_minutes, resolve_grace_minutes


TUESDAY = date(2026, 3, 10)
SATURDAY = date(2026, 3, 14)


class TestRiskClassDefaults:

    @pytest.mark.unit
    @pytest.mark.parametrize("risk_class,minutes", [
        ("critical", 15),
        ("standard", 30),
        ("vitamin", 120),
        ("prn", 0),
    ])
    def test_base_minutes(self, risk_class, minutes):
        assert base_grace_minutes(risk_class) == minutes
        assert resolve_grace_minutes(GracePolicy(risk_class=RiskClass(risk_class))) == minutes

    @pytest.mark.unit
    def test_empty_policy_is_standard(self):
        policy = GracePolicy.from_dict({})

        assert policy.risk_class == RiskClass.STANDARD
        assert resolve_grace_minutes(policy) == 30


class TestOverrides:

    @pytest.mark.unit
    def test_default_minutes_beat_risk_class(self):
        policy = GracePolicy.from_dict({"risk_class": "critical", "default_minutes": 45})

        assert resolve_grace_minutes(policy) == 45

    @pytest.mark.unit
    def test_time_slot_override_wins(self):
        policy = GracePolicy.from_dict({
            "default_minutes": 45,
            "time_slot_overrides": {"before_bed": 90},
        })

        assert resolve_grace_minutes(policy, time_slot="before_bed") == 90
        assert resolve_grace_minutes(policy, time_slot="morning") == 45


class TestMultipliers:

    @pytest.mark.unit
    def test_weekend_multiplier(self):
        policy = GracePolicy.from_dict({"weekend_multiplier": 2.0})

        assert resolve_grace_minutes(policy, local_day=SATURDAY) == 60
        assert resolve_grace_minutes(policy, local_day=TUESDAY) == 30

    @pytest.mark.unit
    def test_holiday_multiplier(self):
        policy = GracePolicy.from_dict({"holiday_multiplier": 1.5})

        assert resolve_grace_minutes(policy, local_day=TUESDAY, holidays=["2026-03-10"]) == 45
        assert resolve_grace_minutes(policy, local_day=TUESDAY, holidays=["2026-12-25"]) == 30

    @pytest.mark.unit
    def test_multipliers_compound(self):
        policy = GracePolicy.from_dict({"weekend_multiplier": 2.0, "holiday_multiplier": 1.5})

        assert resolve_grace_minutes(policy, local_day=SATURDAY, holidays=["2026-03-14"]) == 90

    @pytest.mark.unit
    def test_defaults_are_neutral(self):
        policy = GracePolicy.from_dict({"risk_class": "vitamin"})

        assert resolve_grace_minutes(policy, local_day=SATURDAY, holidays=["2026-03-14"]) == 120
