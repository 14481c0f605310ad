"""Reconcile student references that may carry an id, a full name, or both.

Incidents written before students had ids only store the display name, and
some callers put an id in the name slot. Every lookup goes through
:func:`normalize_ref` so the UUID heuristic lives in one place.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from errors import NotFoundError

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass
class StudentRef:
    id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_json(cls, payload: dict) -> "StudentRef":
        return cls(
            id=payload.get("student_id") or payload.get("id"),
            name=payload.get("student_name") or payload.get("name"),
        )

    def __str__(self) -> str:
        return self.id or self.name or "<empty>"


def looks_like_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_RE.match(value.strip()))


def normalize_ref(ref: StudentRef | str | None) -> StudentRef:
    """Return a ref with stripped values and any UUID moved to the id slot."""
    if ref is None:
        return StudentRef()
    if isinstance(ref, str):
        ref = StudentRef(name=ref)
    ref_id = (ref.id or "").strip() or None
    name = (ref.name or "").strip() or None
    if not ref_id and looks_like_uuid(name):
        return StudentRef(id=name, name=None)
    return StudentRef(id=ref_id, name=name)


def display_name(student) -> str:
    return f"{student.first_name or ''} {student.last_name or ''}".strip()


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split on the last space: everything before is the first name."""
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return " ".join(parts[:-1]), parts[-1]


def find_by_id(student_id: str, candidates: Iterable) -> Optional[object]:
    for student in candidates:
        if student.id == student_id:
            return student
    return None


def find_by_name(name: str, candidates: Iterable) -> Optional[object]:
    for student in candidates:
        if display_name(student) == name:
            return student
    return None


def resolve_student(ref: StudentRef | str | None, candidates: Sequence) -> Optional[object]:
    """Find the student a reference points at.

    The id is authoritative: when present it is tried first. The name is the
    secondary strategy and is also used when an id misses. Returns None when
    neither strategy matches.
    """
    ref = normalize_ref(ref)
    if ref.id:
        student = find_by_id(ref.id, candidates)
        if student is not None:
            return student
        if not ref.name:
            return None
        logger.warning("Student id %s not found, falling back to name lookup", ref.id)
    if ref.name:
        return find_by_name(ref.name, candidates)
    return None


def require_student(ref: StudentRef | str | None, candidates: Sequence):
    student = resolve_student(ref, candidates)
    if student is None:
        raise NotFoundError(f"student not found: {normalize_ref(ref)}")
    return student


def student_key(incident) -> str:
    """Aggregation key for an incident's student: id when known, else the name."""
    if incident.student_id:
        return f"id:{incident.student_id}"
    return f"name:{(incident.student_name or '').strip()}"


def canonical_key_map(incidents: Iterable, students: Sequence) -> dict[str, str]:
    """Map each incident id to the key of the student it belongs to.

    Legacy name-only incidents are folded into the id key of the student whose
    display name matches, so both generations of rows count as one student.
    """
    by_name = {}
    for student in students:
        by_name.setdefault(display_name(student), student)
    keys = {}
    for incident in incidents:
        if incident.student_id:
            keys[incident.id] = f"id:{incident.student_id}"
            continue
        student = by_name.get((incident.student_name or "").strip())
        if student is not None and student.id:
            keys[incident.id] = f"id:{student.id}"
        else:
            keys[incident.id] = student_key(incident)
    return keys
