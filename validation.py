"""Field checks shared by the incident, student and attendance flows.

Every check raises :class:`errors.ValidationError` with a message that can be
shown to the person filling in the form. Optional fields accept ``None`` and
blank strings.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Mapping, Optional

from errors import ValidationError
from records import (
    ATTENDANCE_STATES,
    CATEGORIES,
    MARK_PERIODS,
    SEVERITIES,
    normalize_category,
    normalize_severity,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-+()]+$")
NAME_RE = re.compile(r"^[a-zA-ZáéíóúÁÉÍÓÚñÑüÜ\s\-']+$")
MIN_PHONE_DIGITS = 7
MIN_DESCRIPTION_LENGTH = 10
MAX_MARK_SCORE = 100


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_required(value: Any, field: str) -> None:
    if _is_blank(value):
        raise ValidationError(f"{field} is required")


def validate_text(value: Any, field: str) -> None:
    """Optional free-text field: ``None`` or a string."""
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be text")


def validate_email(value: Optional[str], field: str = "Email address") -> None:
    if _is_blank(value):
        return
    validate_text(value, field)
    if not EMAIL_RE.match(value):
        raise ValidationError(f"{field} is not valid")


def validate_phone(value: Optional[str], field: str = "Phone number") -> None:
    if _is_blank(value):
        return
    validate_text(value, field)
    if not PHONE_RE.match(value):
        raise ValidationError(f"{field} contains invalid characters")
    digits = re.sub(r"\D", "", value)
    if len(digits) < MIN_PHONE_DIGITS:
        raise ValidationError(f"{field} must have at least {MIN_PHONE_DIGITS} digits")


def validate_date_not_future(value: Any, field: str = "Date", today: Optional[date] = None) -> date:
    if _is_blank(value):
        raise ValidationError(f"{field} is required")
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        try:
            parsed = date.fromisoformat(str(value).strip()[:10])
        except ValueError:
            raise ValidationError(f"{field} is not a valid date (YYYY-MM-DD)") from None
    if parsed > (today or date.today()):
        raise ValidationError(f"{field} cannot be in the future")
    return parsed


def validate_age(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        age = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Age must be a number") from None
    if age < 1 or age > 150:
        raise ValidationError("Age must be between 1 and 150")
    return age


def validate_name(value: Optional[str], field: str = "Name") -> None:
    if _is_blank(value):
        raise ValidationError(f"{field} is required")
    validate_text(value, field)
    if len(value.strip()) < 2:
        raise ValidationError(f"{field} must have at least 2 characters")
    if not NAME_RE.match(value):
        raise ValidationError(f"{field} contains invalid characters")


def validate_description(value: Optional[str], min_length: int = MIN_DESCRIPTION_LENGTH) -> None:
    if _is_blank(value):
        raise ValidationError("Description is required")
    validate_text(value, "Description")
    if len(value.strip()) < min_length:
        raise ValidationError(f"Description must have at least {min_length} characters")


def validate_attendance_entries(entries: Optional[Mapping[str, str]]) -> None:
    if not entries:
        raise ValidationError("Attendance must be recorded for at least one student")
    if not isinstance(entries, Mapping):
        raise ValidationError("Attendance entries must map student names to states")
    if any(not isinstance(name, str) or not name.strip() for name in entries):
        raise ValidationError("Attendance entries need a student name")
    unknown = sorted({str(state) for state in entries.values() if state not in ATTENDANCE_STATES})
    if unknown:
        raise ValidationError(f"Unknown attendance state: {', '.join(unknown)}")


def _collect(errors: list[str], check, *args, **kwargs) -> None:
    try:
        check(*args, **kwargs)
    except ValidationError as exc:
        errors.extend(exc.errors)


# Contact groups of the student form and the free-text keys they carry. The
# same values may also arrive flat, e.g. ``guardian_phone``.
_GROUP_TEXT = {
    "contact": ("name",),
    "guardian": ("name", "relation", "address"),
    "tutor": ("name",),
}
_GROUP_PHONES = {"contact": ("phone",), "guardian": ("phone", "alt_phone"), "tutor": ("phone",)}


def _label(group: str, key: str) -> str:
    return f"{group.capitalize()} {key.replace('_', ' ')}"


def validate_student_payload(payload: Mapping[str, Any], partial: bool = False) -> None:
    """Validate a student form; ``partial`` skips the name checks when the names are absent."""
    errors: list[str] = []
    for key, label in (("first_name", "First name"), ("last_name", "Last name")):
        if partial and key not in payload:
            continue
        _collect(errors, validate_name, payload.get(key), label)
    _collect(errors, validate_age, payload.get("age"))
    for key, label in (("birth_date", "Birth date"), ("photo_ref", "Photo")):
        _collect(errors, validate_text, payload.get(key), label)
    for key, label in (("grade", "Grade"), ("section", "Section")):
        if not isinstance(payload.get(key), int):
            _collect(errors, validate_text, payload.get(key), label)
    for group in ("contact", "guardian", "tutor"):
        section = payload.get(group)
        if section is None:
            section = {}
        elif not isinstance(section, Mapping):
            errors.append(f"{group.capitalize()} details must be an object")
            section = {}
        for key in ("email",) + _GROUP_PHONES[group] + _GROUP_TEXT[group]:
            flat_key = f"{group}_{key}"
            for value in (section.get(key), payload.get(flat_key)):
                if key == "email":
                    _collect(errors, validate_email, value, _label(group, key))
                elif key in _GROUP_PHONES[group]:
                    _collect(errors, validate_phone, value, _label(group, key))
                else:
                    _collect(errors, validate_text, value, _label(group, key))
    if errors:
        raise ValidationError(errors)


def validate_incident_payload(payload: Mapping[str, Any], today: Optional[date] = None) -> None:
    errors: list[str] = []
    if _is_blank(payload.get("student_id")) and _is_blank(payload.get("student_name")):
        errors.append("Student is required")
    for key, label in (
        ("student_id", "Student id"),
        ("student_name", "Student name"),
        ("category", "Category"),
        ("severity", "Severity"),
        ("escalation", "Escalation"),
        ("subcategory", "Subcategory"),
        ("teacher", "Teacher"),
        ("location", "Location"),
    ):
        _collect(errors, validate_text, payload.get(key), label)
    raw_category = payload.get("category")
    category = normalize_category(raw_category) if isinstance(raw_category, str) else None
    if raw_category is None or (isinstance(raw_category, str) and not category):
        errors.append("Category is required")
    elif category and category not in CATEGORIES:
        errors.append(f"Unknown category: {raw_category}")
    raw_severity = payload.get("severity")
    severity = normalize_severity(raw_severity) if isinstance(raw_severity, str) else None
    if severity and severity not in SEVERITIES:
        errors.append(f"Unknown severity: {payload.get('severity')}")
    _collect(errors, validate_description, payload.get("description"))
    _collect(errors, validate_date_not_future, payload.get("date"), "Incident date", today)
    if errors:
        raise ValidationError(errors)


def validate_score(value: Any, field: str = "Score") -> float:
    if _is_blank(value):
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if score < 0 or score > MAX_MARK_SCORE:
        raise ValidationError(f"{field} must be between 0 and {MAX_MARK_SCORE}")
    return score


def validate_mark_payload(payload: Mapping[str, Any]) -> None:
    errors: list[str] = []
    if _is_blank(payload.get("student_id")) and _is_blank(payload.get("student_name")):
        errors.append("Student is required")
    _collect(errors, validate_required, payload.get("subject"), "Subject")
    for key, label in (
        ("student_id", "Student id"),
        ("student_name", "Student name"),
        ("subject", "Subject"),
        ("period", "Period"),
        ("date", "Date"),
        ("teacher", "Teacher"),
        ("comment", "Comment"),
        ("status", "Status"),
    ):
        _collect(errors, validate_text, payload.get(key), label)
    _collect(errors, validate_score, payload.get("score"))
    period = payload.get("period")
    if isinstance(period, str) and period.strip() and period.strip().upper() not in MARK_PERIODS:
        errors.append(f"Unknown period: {period}")
    if errors:
        raise ValidationError(errors)


def validate_tutor_payload(payload: Mapping[str, Any]) -> None:
    errors: list[str] = []
    _collect(errors, validate_required, payload.get("name"), "Tutor name")
    _collect(errors, validate_text, payload.get("name"), "Tutor name")
    _collect(errors, validate_text, payload.get("id"), "Tutor id")
    _collect(errors, validate_email, payload.get("email"), "Tutor email")
    _collect(errors, validate_phone, payload.get("phone"), "Tutor phone")
    if errors:
        raise ValidationError(errors)


def validate_draft_payload(payload: Mapping[str, Any]) -> None:
    """Incident pre-fill: only the student is required, the rest is checked when present."""
    errors: list[str] = []
    if _is_blank(payload.get("student_id")) and _is_blank(payload.get("student_name")):
        errors.append("Student is required")
    for key, label in (
        ("student_id", "Student id"),
        ("student_name", "Student name"),
        ("category", "Category"),
        ("severity", "Severity"),
        ("teacher", "Teacher"),
    ):
        _collect(errors, validate_text, payload.get(key), label)
    category = payload.get("category")
    if isinstance(category, str) and category.strip() and normalize_category(category) not in CATEGORIES:
        errors.append(f"Unknown category: {category}")
    severity = payload.get("severity")
    if isinstance(severity, str) and severity.strip() and normalize_severity(severity) not in SEVERITIES:
        errors.append(f"Unknown severity: {severity}")
    if errors:
        raise ValidationError(errors)
