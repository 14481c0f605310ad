from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

CATEGORY_ATTENDANCE = "attendance"
CATEGORY_BEHAVIOR = "behavior"
CATEGORY_ACADEMIC = "academic"
CATEGORY_POSITIVE = "positive"
CATEGORIES = (CATEGORY_ATTENDANCE, CATEGORY_BEHAVIOR, CATEGORY_ACADEMIC, CATEGORY_POSITIVE)

SEVERITY_MILD = "mild"
SEVERITY_MODERATE = "moderate"
SEVERITY_SEVERE = "severe"
SEVERITIES = (SEVERITY_MILD, SEVERITY_MODERATE, SEVERITY_SEVERE)

ESCALATION_TARGETS = ("director", "psychology", "nursing", "coordination", "guidance")
ESCALATION_NONE = "none"

STATUS_PENDING = "Pending"
STATUS_RESOLVED = "Resolved"
STATUS_IN_REVIEW = "In-review"
STATUS_CLOSED = "Closed"
STATUS_NORMAL = "Normal"
STATUSES = (STATUS_PENDING, STATUS_RESOLVED, STATUS_IN_REVIEW, STATUS_CLOSED, STATUS_NORMAL)

ATTENDANCE_STATES = ("present", "late", "absent")

MARK_PERIODS = ("Q1", "Q2", "Q3", "Q4")

VIEWER_ROLES = ("director", "teacher", "tutor", "psychology", "nursing", "coordination", "guidance")
DEFAULT_VIEWER_ROLE = "director"

# Values written by the earlier Spanish-language frontend.
_CATEGORY_ALIASES = {
    "ausencia": CATEGORY_ATTENDANCE,
    "asistencia": CATEGORY_ATTENDANCE,
    "conducta": CATEGORY_BEHAVIOR,
    "academica": CATEGORY_ACADEMIC,
    "académica": CATEGORY_ACADEMIC,
    "positivo": CATEGORY_POSITIVE,
}
_SEVERITY_ALIASES = {
    "leve": SEVERITY_MILD,
    "moderada": SEVERITY_MODERATE,
    "grave": SEVERITY_SEVERE,
}
_ESCALATION_ALIASES = {
    "director": "director",
    "psicologia": "psychology",
    "psicología": "psychology",
    "enfermeria": "nursing",
    "enfermería": "nursing",
    "coordinacion": "coordination",
    "coordinación": "coordination",
    "orientacion": "guidance",
    "orientación": "guidance",
    "ninguna": ESCALATION_NONE,
}
_STATUS_ALIASES = {
    "pendiente": STATUS_PENDING,
    "resuelta": STATUS_RESOLVED,
    "en revisión": STATUS_IN_REVIEW,
    "en revision": STATUS_IN_REVIEW,
    "cerrada": STATUS_CLOSED,
    "normal": STATUS_NORMAL,
}


def normalize_category(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = str(value).strip().lower()
    return _CATEGORY_ALIASES.get(text, text)


def normalize_severity(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = str(value).strip().lower()
    return _SEVERITY_ALIASES.get(text, text)


def normalize_escalation(value: Optional[str]) -> Optional[str]:
    """Return a known escalation target, or None for empty / "none"."""
    if not value:
        return None
    text = str(value).strip().lower()
    text = _ESCALATION_ALIASES.get(text, text)
    if text == ESCALATION_NONE:
        return None
    return text


def normalize_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = str(value).strip()
    for status in STATUSES:
        if status.lower() == text.lower():
            return status
    return _STATUS_ALIASES.get(text.lower(), text)


def parse_incident_date(value: Any) -> Optional[date]:
    """Parse the stored incident date; None when it is missing or malformed."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


@dataclass
class StudentRecord:
    id: Optional[str]
    first_name: str
    last_name: str
    grade: Optional[str] = None
    section: Optional[str] = None
    age: Optional[int] = None
    birth_date: Optional[str] = None
    contact: dict[str, Any] = field(default_factory=dict)
    guardian: dict[str, Any] = field(default_factory=dict)
    tutor: dict[str, Any] = field(default_factory=dict)
    photo_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @classmethod
    def from_model(cls, row) -> "StudentRecord":
        return cls(
            id=row.id,
            first_name=row.first_name,
            last_name=row.last_name,
            grade=row.grade,
            section=row.section,
            age=row.age,
            birth_date=row.birth_date,
            contact={
                "name": row.contact_name,
                "phone": row.contact_phone,
                "email": row.contact_email,
            },
            guardian={
                "name": row.guardian_name,
                "relation": row.guardian_relation,
                "phone": row.guardian_phone,
                "alt_phone": row.guardian_alt_phone,
                "email": row.guardian_email,
                "address": row.guardian_address,
            },
            tutor={
                "name": row.tutor_name,
                "phone": row.tutor_phone,
                "email": row.tutor_email,
            },
            photo_ref=row.photo_ref,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.display_name,
            "grade": self.grade,
            "section": self.section,
            "age": self.age,
            "birth_date": self.birth_date,
            "contact": dict(self.contact),
            "guardian": dict(self.guardian),
            "tutor": dict(self.tutor),
            "photo_ref": self.photo_ref,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class StatusChange:
    status: str
    changed_at: datetime
    changed_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "changed_at": _iso(self.changed_at),
            "changed_by": self.changed_by,
        }


@dataclass
class IncidentRecord:
    id: str
    student_id: Optional[str]
    student_name: str
    category: str
    description: str
    date: Optional[str]
    timestamp: Optional[datetime] = None
    severity: Optional[str] = None
    subcategory: Optional[str] = None
    teacher: Optional[str] = None
    tutor_name: Optional[str] = None
    location: Optional[str] = None
    escalation: Optional[str] = None
    resolved: bool = False
    resolution_date: Optional[datetime] = None
    resolved_by: Optional[str] = None
    status: str = STATUS_PENDING
    history: list[StatusChange] = field(default_factory=list)

    @property
    def is_positive(self) -> bool:
        return self.category == CATEGORY_POSITIVE

    @property
    def incident_date(self) -> Optional[date]:
        return parse_incident_date(self.date)

    @classmethod
    def from_model(cls, row) -> "IncidentRecord":
        return cls(
            id=row.id,
            student_id=row.student_id,
            student_name=row.student_name,
            category=row.category,
            description=row.description,
            date=row.date,
            timestamp=row.timestamp,
            severity=row.severity,
            subcategory=row.subcategory,
            teacher=row.teacher,
            tutor_name=row.tutor_name,
            location=row.location,
            escalation=row.escalation,
            resolved=bool(row.resolved),
            resolution_date=row.resolution_date,
            resolved_by=row.resolved_by,
            status=row.status,
            history=[
                StatusChange(
                    status=change.status,
                    changed_at=change.changed_at,
                    changed_by=change.changed_by,
                )
                for change in row.history
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "category": self.category,
            "subcategory": self.subcategory,
            "severity": self.severity,
            "description": self.description,
            "date": self.date,
            "timestamp": _iso(self.timestamp),
            "teacher": self.teacher,
            "tutor_name": self.tutor_name,
            "location": self.location,
            "escalation": self.escalation,
            "resolved": self.resolved,
            "resolution_date": _iso(self.resolution_date),
            "resolved_by": self.resolved_by,
            "status": self.status,
            "history": [change.to_dict() for change in self.history],
        }


@dataclass
class ClassRecord:
    id: int
    name: str
    grade: str
    section: str
    teacher: str
    weekdays: list[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, row) -> "ClassRecord":
        weekdays = [day for day in (row.weekdays or "").split(",") if day]
        return cls(
            id=row.id,
            name=row.name,
            grade=row.grade,
            section=row.section,
            teacher=row.teacher,
            weekdays=weekdays,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "grade": self.grade,
            "section": self.section,
            "teacher": self.teacher,
            "weekdays": list(self.weekdays),
        }


@dataclass
class AttendanceSnapshot:
    id: int
    date: date
    weekday: str
    class_id: int
    class_name: str
    grade: str
    section: str
    teacher: str
    period: str
    location: Optional[str]
    entries: dict[str, str] = field(default_factory=dict)
    student_ids: dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_model(cls, row) -> "AttendanceSnapshot":
        return cls(
            id=row.id,
            date=row.date,
            weekday=row.weekday,
            class_id=row.class_id,
            class_name=row.school_class.name if row.school_class else "",
            grade=row.grade,
            section=row.section,
            teacher=row.teacher,
            period=row.period,
            location=row.location,
            entries={entry.student_name: entry.state for entry in row.entries},
            student_ids={entry.student_name: entry.student_id for entry in row.entries},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "weekday": self.weekday,
            "class_id": self.class_id,
            "class_name": self.class_name,
            "grade": self.grade,
            "section": self.section,
            "teacher": self.teacher,
            "period": self.period,
            "location": self.location,
            "entries": dict(self.entries),
            "student_ids": dict(self.student_ids),
        }


@dataclass
class TutorRecord:
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_model(cls, row) -> "TutorRecord":
        return cls(id=row.id, name=row.name, email=row.email, phone=row.phone)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email, "phone": self.phone}


@dataclass
class SectionTutorRecord:
    grade: str
    section: str
    tutor_id: str
    tutor_name: str

    @classmethod
    def from_model(cls, row) -> "SectionTutorRecord":
        return cls(grade=row.grade, section=row.section, tutor_id=row.tutor_id, tutor_name=row.tutor.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "grade": self.grade,
            "section": self.section,
            "tutor_id": self.tutor_id,
            "tutor_name": self.tutor_name,
        }


@dataclass
class MarkRecord:
    id: str
    student_id: Optional[str]
    student_name: str
    subject: str
    score: float
    period: Optional[str] = None
    date: Optional[str] = None
    teacher: Optional[str] = None
    comment: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_model(cls, row) -> "MarkRecord":
        return cls(
            id=row.id,
            student_id=row.student_id,
            student_name=row.student_name,
            subject=row.subject,
            score=row.score,
            period=row.period,
            date=row.date,
            teacher=row.teacher,
            comment=row.comment,
            status=row.status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "subject": self.subject,
            "score": self.score,
            "period": self.period,
            "date": self.date,
            "teacher": self.teacher,
            "comment": self.comment,
            "status": self.status,
        }


@dataclass
class AttendedRecord:
    student_id: Optional[str]
    student_name: str
    date: date
    teacher: str
    attended_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row) -> "AttendedRecord":
        return cls(
            student_id=row.student_id,
            student_name=row.student_name,
            date=row.date,
            teacher=row.teacher,
            attended_at=row.attended_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "student_name": self.student_name,
            "date": self.date.isoformat(),
            "teacher": self.teacher,
            "attended_at": _iso(self.attended_at),
        }


@dataclass
class DraftRecord:
    """Values a teacher picked before opening the incident form."""

    student_id: Optional[str]
    student_name: str
    category: Optional[str] = None
    severity: Optional[str] = None
    teacher: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row) -> "DraftRecord":
        return cls(
            student_id=row.student_id,
            student_name=row.student_name,
            category=row.category,
            severity=row.severity,
            teacher=row.teacher,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "student_name": self.student_name,
            "category": self.category,
            "severity": self.severity,
            "teacher": self.teacher,
            "updated_at": _iso(self.updated_at),
        }
