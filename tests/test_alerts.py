from datetime import date

import pytest

from fieldsync.alerts import ThresholdEvaluator, classify_severity, find_episode_start
from fieldsync.models import Observation, Severity


def series(*values, field_id="f1"):
    return [
        Observation(field_id=field_id, observation_date=date(2025, 6, day), mean_index=value)
        for day, value in enumerate(values, start=1)
    ]


@pytest.mark.parametrize("values,expected_day", [
    ((), None),
    ((0.4, 0.5), None),
    ((0.25,), 1),
    ((0.25, 0.20), 1),
    ((0.25, 0.20, 0.35), None),
    ((0.25, 0.20, 0.35, 0.22), 4),
    ((0.5, 0.3, 0.29), 3),
])
def test_episode_start(values, expected_day):
    start = find_episode_start(series(*values), threshold=0.3)
    assert start == (date(2025, 6, expected_day) if expected_day else None)


def test_episode_start_ignores_input_order():
    shuffled = list(reversed(series(0.25, 0.20, 0.35, 0.22, 0.21)))
    assert find_episode_start(shuffled, 0.3) == date(2025, 6, 4)


@pytest.mark.parametrize("value,threshold,expected", [
    (0.25, 0.3, Severity.MILD),
    (0.20, 0.3, Severity.MILD),
    (0.18, 0.3, Severity.MODERATE),
    (0.15, 0.3, Severity.MODERATE),
    (0.14, 0.3, Severity.SEVERE),
    (0.0, 0.3, Severity.SEVERE),
    (0.55, 0.6, Severity.MILD),
])
def test_severity_tiers(value, threshold, expected):
    assert classify_severity(value, threshold) == expected


def test_breach_produces_decision(make_field):
    field = make_field(alert_threshold=0.3)

    decision = ThresholdEvaluator().evaluate(field, series(0.5, 0.25, field_id=field.id))

    assert decision.field_id == field.id
    assert decision.user_id == field.user_id
    assert decision.value == 0.25
    assert decision.threshold == 0.3
    assert decision.severity == Severity.MILD
    assert decision.episode_start == date(2025, 6, 2)
    assert decision.observation_date == date(2025, 6, 2)


def test_value_at_threshold_is_not_a_breach(make_field):
    field = make_field(alert_threshold=0.3)
    assert ThresholdEvaluator().evaluate(field, series(0.2, 0.3, field_id=field.id)) is None


def test_disabled_alerts_never_fire(make_field):
    field = make_field(alert_threshold=0.3, alerts_enabled=False)
    assert ThresholdEvaluator().evaluate(field, series(0.05, field_id=field.id)) is None


def test_no_observations_no_decision(make_field):
    assert ThresholdEvaluator().evaluate(make_field(), []) is None


@pytest.mark.parametrize("threshold", [0.0, 1.0])
def test_threshold_bounds(make_field, threshold):
    field = make_field(alert_threshold=threshold)
    decision = ThresholdEvaluator().evaluate(field, series(0.0, field_id=field.id))
    if threshold == 0.0:
        assert decision is None
    else:
        assert decision.severity == Severity.SEVERE
