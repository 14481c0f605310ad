from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Optional, Sequence

from identity import canonical_key_map, display_name, student_key
from records import (
    CATEGORIES,
    CATEGORY_POSITIVE,
    SEVERITIES,
    SEVERITY_MODERATE,
    SEVERITY_SEVERE,
    parse_incident_date,
)

logger = logging.getLogger(__name__)

TEACHER_OUTLIER_FACTOR = 1.5
FREQUENT_STUDENT_THRESHOLD = 5


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-date window; either end may be open."""

    start: Optional[date] = None
    end: Optional[date] = None

    @classmethod
    def from_strings(cls, start: Optional[str], end: Optional[str]) -> "DateRange":
        start_date = date.fromisoformat(start[:10]) if start else None
        end_date = date.fromisoformat(end[:10]) if end else None
        if start_date and end_date and start_date > end_date:
            raise ValueError("start date must not be after end date")
        return cls(start_date, end_date)

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, value: date) -> bool:
        if self.start and value < self.start:
            return False
        if self.end and value > self.end:
            return False
        return True

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass
class IncidentStats:
    total: int = 0
    counts_by_category: dict[str, int] = field(default_factory=lambda: {c: 0 for c in CATEGORIES})
    counts_by_severity: dict[str, int] = field(default_factory=lambda: {s: 0 for s in SEVERITIES})
    unique_student_count: int = 0
    undated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "counts_by_category": dict(self.counts_by_category),
            "counts_by_severity": dict(self.counts_by_severity),
            "unique_student_count": self.unique_student_count,
            "undated": self.undated,
        }


def effective_severity(incident) -> Optional[str]:
    """Severity used for counting; non-positive incidents without one count as moderate."""
    if incident.category == CATEGORY_POSITIVE:
        return None
    if incident.severity in SEVERITIES:
        return incident.severity
    return SEVERITY_MODERATE


def filter_by_range(incidents: Iterable, date_range: Optional[DateRange]) -> tuple[list, int]:
    """Return the incidents inside ``date_range`` and how many had no usable date.

    With no range (or an open one) every incident is kept, but undated rows are
    still counted so callers can surface them.
    """
    kept = []
    undated = 0
    for incident in incidents:
        incident_date = parse_incident_date(incident.date)
        if incident_date is None:
            undated += 1
            if date_range is None or date_range.is_open:
                kept.append(incident)
            continue
        if date_range is None or date_range.contains(incident_date):
            kept.append(incident)
    if undated:
        logger.warning("%s incident(s) have no parseable date", undated)
    return kept, undated


def aggregate(
    incidents: Sequence,
    date_range: Optional[DateRange] = None,
    keys: Optional[dict[str, str]] = None,
) -> IncidentStats:
    """Count incidents by category and severity within ``date_range``.

    ``keys`` maps incident ids to canonical student keys (see
    :func:`identity.canonical_key_map`); without it the student's id or name
    is used directly.
    """
    selected, undated = filter_by_range(incidents, date_range)
    stats = IncidentStats(undated=undated)
    students = set()
    for incident in selected:
        stats.total += 1
        if incident.category in stats.counts_by_category:
            stats.counts_by_category[incident.category] += 1
        severity = effective_severity(incident)
        if severity:
            stats.counts_by_severity[severity] += 1
        students.add(keys.get(incident.id) if keys and incident.id in keys else student_key(incident))
    stats.unique_student_count = len(students)
    return stats


def daily_counts(incidents: Iterable) -> dict[str, int]:
    counts: Counter = Counter()
    for incident in incidents:
        incident_date = parse_incident_date(incident.date)
        if incident_date:
            counts[incident_date.isoformat()] += 1
    return dict(sorted(counts.items()))


def counts_by_teacher(incidents: Iterable) -> dict[str, int]:
    counts = Counter(incident.teacher for incident in incidents if incident.teacher)
    return dict(counts.most_common())


def teacher_outliers(incidents: Sequence, factor: float = TEACHER_OUTLIER_FACTOR, limit: int = 5) -> list[dict[str, Any]]:
    """Teachers whose report count exceeds ``factor`` times the per-teacher average."""
    counts = counts_by_teacher(incidents)
    if not counts:
        return []
    average = sum(counts.values()) / len(counts)
    outliers = [
        {"teacher": teacher, "count": count}
        for teacher, count in counts.items()
        if count > average * factor
    ]
    outliers.sort(key=lambda item: -item["count"])
    return outliers[:limit]


def frequent_students(
    incidents: Sequence,
    threshold: int = FREQUENT_STUDENT_THRESHOLD,
    limit: int = 10,
    keys: Optional[dict[str, str]] = None,
) -> list[dict[str, Any]]:
    counts: Counter = Counter()
    labels: dict[str, str] = {}
    for incident in incidents:
        key = keys.get(incident.id) if keys and incident.id in keys else student_key(incident)
        counts[key] += 1
        labels.setdefault(key, incident.student_name)
    result = [
        {"student": labels[key], "key": key, "count": count}
        for key, count in counts.most_common()
        if count >= threshold
    ]
    return result[:limit]


def severe_share(incidents: Sequence) -> float:
    """Percentage of incidents that are severe, rounded to one decimal."""
    if not incidents:
        return 0.0
    severe = sum(1 for incident in incidents if effective_severity(incident) == SEVERITY_SEVERE)
    return round(severe * 100 / len(incidents), 1)


def dominant_category(incidents: Iterable) -> Optional[str]:
    counts = Counter(incident.category for incident in incidents)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def aggregate_by_class(incidents: Sequence, students: Sequence) -> list[dict[str, Any]]:
    """Incident statistics bucketed by the student's grade and section."""
    keys = canonical_key_map(incidents, students)
    placement = {f"id:{student.id}": (student.grade or "", student.section or "") for student in students}
    names = {f"name:{display_name(student)}": f"id:{student.id}" for student in students}
    buckets: dict[tuple[str, str], list] = {}
    for incident in incidents:
        key = keys.get(incident.id, student_key(incident))
        key = names.get(key, key)
        grade_section = placement.get(key, ("", ""))
        buckets.setdefault(grade_section, []).append(incident)
    result = []
    for (grade, section), bucket in sorted(buckets.items()):
        stats = aggregate(bucket, keys=keys)
        entry = stats.to_dict()
        entry["grade"] = grade or None
        entry["section"] = section or None
        result.append(entry)
    return result
