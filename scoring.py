from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from identity import student_key
from incident_stats import effective_severity
from records import CATEGORY_POSITIVE, SEVERITY_MILD, SEVERITY_MODERATE, SEVERITY_SEVERE, SEVERITIES

STANDOUT_LIMIT = 10
AT_RISK_MIN_SEVERE = 3

BAND_EXCELLENT = "Excellent"
BAND_GOOD = "Good"
BAND_FAIR = "Fair"
BAND_NEEDS_ATTENTION = "Needs attention"


@dataclass(frozen=True)
class ScoringWeights:
    positive: int = 5
    mild: int = -1
    moderate: int = -3
    severe: int = -6

    @classmethod
    def from_json(cls, payload: dict) -> "ScoringWeights":
        defaults = cls()
        return cls(
            positive=int(payload.get("positive", defaults.positive)),
            mild=int(payload.get("mild", defaults.mild)),
            moderate=int(payload.get("moderate", defaults.moderate)),
            severe=int(payload.get("severe", defaults.severe)),
        )

    def for_severity(self, severity: str) -> int:
        return {
            SEVERITY_MILD: self.mild,
            SEVERITY_MODERATE: self.moderate,
            SEVERITY_SEVERE: self.severe,
        }[severity]

    def to_dict(self) -> dict[str, int]:
        return {
            "positive": self.positive,
            "mild": self.mild,
            "moderate": self.moderate,
            "severe": self.severe,
        }


DEFAULT_WEIGHTS = ScoringWeights()


@dataclass
class StudentScore:
    points: int = 0
    positives: int = 0
    negatives: int = 0
    by_severity: dict[str, int] = field(default_factory=lambda: {s: 0 for s in SEVERITIES})
    key: Optional[str] = None
    student_id: Optional[str] = None
    student_name: Optional[str] = None

    @property
    def severe(self) -> int:
        return self.by_severity[SEVERITY_SEVERE]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "points": self.points,
            "positives": self.positives,
            "negatives": self.negatives,
            "by_severity": dict(self.by_severity),
        }


def score(student_incidents: Iterable, weights: ScoringWeights = DEFAULT_WEIGHTS) -> StudentScore:
    """Sum the weighted points of one student's incidents. No floor or ceiling."""
    result = StudentScore()
    for incident in student_incidents:
        if result.student_name is None:
            result.student_name = incident.student_name
        if incident.student_id and result.student_id is None:
            result.student_id = incident.student_id
        if incident.category == CATEGORY_POSITIVE:
            result.points += weights.positive
            result.positives += 1
            continue
        severity = effective_severity(incident)
        result.points += weights.for_severity(severity)
        result.negatives += 1
        result.by_severity[severity] += 1
    return result


def group_by_student(incidents: Iterable, keys: Optional[dict[str, str]] = None) -> dict[str, list]:
    groups: dict[str, list] = {}
    for incident in incidents:
        key = keys.get(incident.id) if keys and incident.id in keys else student_key(incident)
        groups.setdefault(key, []).append(incident)
    return groups


def score_students(
    incidents: Iterable,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    keys: Optional[dict[str, str]] = None,
) -> list[StudentScore]:
    scores = []
    for key, group in group_by_student(incidents, keys).items():
        result = score(group, weights)
        result.key = key
        scores.append(result)
    return scores


def rank_standouts(
    incidents: Sequence,
    limit: int = STANDOUT_LIMIT,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    keys: Optional[dict[str, str]] = None,
) -> list[StudentScore]:
    """Students with a positive balance and at least one positive incident, best first."""
    candidates = [
        result
        for result in score_students(incidents, weights, keys)
        if result.points > 0 and result.positives >= 1
    ]
    candidates.sort(
        key=lambda r: (
            -r.points,
            -r.positives,
            r.by_severity[SEVERITY_SEVERE],
            r.by_severity[SEVERITY_MODERATE],
        )
    )
    return candidates[:limit]


def rank_at_risk(
    incidents: Sequence,
    min_severe: int = AT_RISK_MIN_SEVERE,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    keys: Optional[dict[str, str]] = None,
) -> list[StudentScore]:
    """Every student with at least ``min_severe`` severe incidents, most severe first."""
    flagged = [
        result
        for result in score_students(incidents, weights, keys)
        if result.severe >= min_severe
    ]
    # sort is stable, ties keep first-seen order
    flagged.sort(key=lambda r: -r.severe)
    return flagged


def performance_index(positives: int, negatives: int, severe: int) -> int:
    raw = positives * 20 - negatives * 10 - severe * 15 + 50
    return max(0, min(100, raw))


def performance_band(index: int) -> str:
    if index >= 70:
        return BAND_EXCELLENT
    if index >= 50:
        return BAND_GOOD
    if index >= 30:
        return BAND_FAIR
    return BAND_NEEDS_ATTENTION


def performance_summary(result: StudentScore) -> dict[str, Any]:
    index = performance_index(result.positives, result.negatives, result.severe)
    return {"index": index, "band": performance_band(index)}
