from datetime import date
from typing import Iterable, List, Optional

from .logging_config import get_logger
from .models import AlertDecision, Field, Observation, Severity

logger = get_logger(__name__)

# Shortfall (absolute, on the 0-1 index scale) still rated mild
MILD_MARGIN = 0.10


def _ascending(observations: Iterable[Observation]) -> List[Observation]:
    return sorted(observations, key=lambda obs: (obs.observation_date, obs.source))


def find_episode_start(observations: Iterable[Observation], threshold: float) -> Optional[date]:
    """
    Date of the first observation in the trailing run below `threshold`.

    None when the latest observation is at or above the threshold. Crossing back
    above the threshold closes an episode; the next dip opens a new one.
    """
    start = None
    for obs in _ascending(observations):
        if obs.mean_index < threshold:
            if start is None:
                start = obs.observation_date
        else:
            start = None
    return start


def classify_severity(value: float, threshold: float) -> Severity:
    if value < threshold / 2:
        return Severity.SEVERE
    if round(threshold - value, 6) <= MILD_MARGIN:
        return Severity.MILD
    return Severity.MODERATE


class ThresholdEvaluator:
    def evaluate(self, field: Field, observations: Iterable[Observation]) -> Optional[AlertDecision]:
        """
        Decide whether the field's latest reading breaches its threshold.

        The decision names the breach episode; whether an alert for that episode
        already exists is settled when the row is inserted.
        """
        if not field.alerts_enabled:
            return None

        ordered = _ascending(observations)
        if not ordered:
            return None

        latest = ordered[-1]
        threshold = field.alert_threshold
        if latest.mean_index >= threshold:
            return None

        episode_start = find_episode_start(ordered, threshold)
        decision = AlertDecision(
            field_id=field.id,
            user_id=field.user_id,
            field_name=field.name,
            value=latest.mean_index,
            threshold=threshold,
            severity=classify_severity(latest.mean_index, threshold),
            episode_start=episode_start,
            observation_date=latest.observation_date,
        )
        logger.info(
            "Threshold breach detected",
            extra={"extra": {
                "field_id": field.id,
                "value": latest.mean_index,
                "threshold": threshold,
                "severity": decision.severity.value,
                "episode_start": episode_start,
            }},
        )
        return decision
