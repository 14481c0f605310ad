from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef, normalize_ref
from incident_stats import DateRange
from models import AttendanceEntry, AttendanceRecord, SchoolClass
from records import AttendanceSnapshot, ClassRecord
from student_service import StudentManager
from validation import (
    validate_attendance_entries,
    validate_date_not_future,
    validate_required,
    validate_text,
)

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _normalize_weekdays(values: Iterable[str] | str | None) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    days = []
    for value in values:
        day = str(value).strip().lower()
        if not day:
            continue
        if day not in WEEKDAYS:
            raise ValidationError(f"unknown weekday: {value}")
        if day not in days:
            days.append(day)
    return sorted(days, key=WEEKDAYS.index)


class ClassManager:
    def __init__(self, session_factory: Callable, students: StudentManager):
        self._session_factory = session_factory
        self.students = students

    def _commit(self, session, action: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to %s", action)
            raise PersistenceError(f"could not {action}: {exc}") from exc

    def add_class(self, payload: Dict[str, Any]) -> ClassRecord:
        """Create a class, or update teacher and weekdays when it already exists."""
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        errors = []
        for key, label in (("name", "Class name"), ("grade", "Grade"), ("section", "Section"), ("teacher", "Teacher")):
            try:
                validate_required(payload.get(key), label)
                if key in ("name", "teacher"):
                    validate_text(payload.get(key), label)
            except ValidationError as exc:
                errors.extend(exc.errors)
        if errors:
            raise ValidationError(errors)
        weekdays = _normalize_weekdays(payload.get("weekdays"))
        name = payload["name"].strip()
        grade = str(payload["grade"]).strip()
        section = str(payload["section"]).strip()
        with self._session_factory() as session:
            row = (
                session.query(SchoolClass)
                .filter(
                    SchoolClass.name == name,
                    SchoolClass.grade == grade,
                    SchoolClass.section == section,
                )
                .one_or_none()
            )
            if row is None:
                row = SchoolClass(name=name, grade=grade, section=section)
                session.add(row)
            row.teacher = payload["teacher"].strip()
            row.weekdays = ",".join(weekdays)
            self._commit(session, "save class")
            record = ClassRecord.from_model(row)
        logger.info("Saved class %s %s%s for %s", record.name, record.grade, record.section, record.teacher)
        return record

    def get_class(self, class_id: int) -> ClassRecord:
        with self._session_factory() as session:
            row = session.get(SchoolClass, class_id)
            if row is None:
                raise NotFoundError(f"class not found: {class_id}")
            return ClassRecord.from_model(row)

    def list_classes(
        self,
        teacher: Optional[str] = None,
        grade: Optional[str] = None,
        section: Optional[str] = None,
    ) -> list[ClassRecord]:
        with self._session_factory() as session:
            query = session.query(SchoolClass)
            if teacher:
                query = query.filter(SchoolClass.teacher == teacher)
            if grade:
                query = query.filter(SchoolClass.grade == grade)
            if section:
                query = query.filter(SchoolClass.section == section)
            rows = query.order_by(SchoolClass.grade, SchoolClass.section, SchoolClass.name).all()
            return [ClassRecord.from_model(row) for row in rows]

    def record_attendance(self, payload: Dict[str, Any], today: Optional[date] = None) -> AttendanceSnapshot:
        """Store attendance for one class period, replacing an earlier record for the same slot."""
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        record_date = validate_date_not_future(payload.get("date"), "Attendance date", today)
        validate_required(payload.get("period"), "Period")
        validate_text(payload.get("teacher"), "Teacher")
        validate_text(payload.get("location"), "Location")
        entries = payload.get("entries") or {}
        validate_attendance_entries(entries)
        try:
            class_id = int(payload.get("class_id"))
        except (TypeError, ValueError):
            raise ValidationError("Class is required") from None
        school_class = self.get_class(class_id)
        period = str(payload["period"]).strip()
        ids_by_name = {
            student.display_name: student.id
            for student in self.students.list_students(grade=school_class.grade, section=school_class.section)
        }
        with self._session_factory() as session:
            row = (
                session.query(AttendanceRecord)
                .filter(
                    AttendanceRecord.date == record_date,
                    AttendanceRecord.class_id == school_class.id,
                    AttendanceRecord.period == period,
                )
                .one_or_none()
            )
            replaced = row is not None
            if row is None:
                row = AttendanceRecord(date=record_date, class_id=school_class.id, period=period)
                session.add(row)
            row.weekday = WEEKDAYS[record_date.weekday()]
            row.grade = school_class.grade
            row.section = school_class.section
            row.teacher = (payload.get("teacher") or "").strip() or school_class.teacher
            row.location = (payload.get("location") or "").strip() or None
            row.entries = [
                AttendanceEntry(
                    student_name=name.strip(),
                    student_id=ids_by_name.get(name.strip()),
                    state=state,
                )
                for name, state in entries.items()
            ]
            self._commit(session, "record attendance")
            record_id = row.id
        logger.info(
            "%s attendance for class %s on %s period %s (%s students)",
            "Replaced" if replaced else "Recorded",
            school_class.id,
            record_date,
            period,
            len(entries),
        )
        return self._snapshot(record_id)

    def _snapshot(self, record_id: int) -> AttendanceSnapshot:
        with self._session_factory() as session:
            row = session.get(AttendanceRecord, record_id)
            return AttendanceSnapshot.from_model(row)

    def find_attendance(self, record_date: date, class_id: int, period: str) -> Optional[AttendanceSnapshot]:
        with self._session_factory() as session:
            row = (
                session.query(AttendanceRecord)
                .filter(
                    AttendanceRecord.date == record_date,
                    AttendanceRecord.class_id == class_id,
                    AttendanceRecord.period == period,
                )
                .one_or_none()
            )
            return AttendanceSnapshot.from_model(row) if row else None

    def list_attendance(
        self,
        date_range: Optional[DateRange] = None,
        class_id: Optional[int] = None,
        teacher: Optional[str] = None,
        grade: Optional[str] = None,
        section: Optional[str] = None,
    ) -> list[AttendanceSnapshot]:
        with self._session_factory() as session:
            query = session.query(AttendanceRecord)
            if date_range and date_range.start:
                query = query.filter(AttendanceRecord.date >= date_range.start)
            if date_range and date_range.end:
                query = query.filter(AttendanceRecord.date <= date_range.end)
            if class_id:
                query = query.filter(AttendanceRecord.class_id == class_id)
            if teacher:
                query = query.filter(AttendanceRecord.teacher == teacher)
            if grade:
                query = query.filter(AttendanceRecord.grade == grade)
            if section:
                query = query.filter(AttendanceRecord.section == section)
            rows = query.order_by(AttendanceRecord.date.desc(), AttendanceRecord.period).all()
            return [AttendanceSnapshot.from_model(row) for row in rows]

    def attendance_summary(self, ref: StudentRef | str, date_range: Optional[DateRange] = None) -> dict[str, Any]:
        ref = normalize_ref(ref)
        student = self.students.resolve(ref)
        name = student.display_name if student else ref.name
        if not name:
            raise NotFoundError(f"student not found: {ref}")
        counts = {"present": 0, "late": 0, "absent": 0}
        with self._session_factory() as session:
            query = session.query(AttendanceEntry.state).join(
                AttendanceRecord, AttendanceEntry.record_id == AttendanceRecord.id
            )
            if student:
                query = query.filter(
                    (AttendanceEntry.student_id == student.id)
                    | (AttendanceEntry.student_id.is_(None) & (AttendanceEntry.student_name == name))
                )
            else:
                query = query.filter(AttendanceEntry.student_name == name)
            if date_range and date_range.start:
                query = query.filter(AttendanceRecord.date >= date_range.start)
            if date_range and date_range.end:
                query = query.filter(AttendanceRecord.date <= date_range.end)
            for (state,) in query.all():
                if state in counts:
                    counts[state] += 1
        total = sum(counts.values())
        attended = counts["present"] + counts["late"]
        return {
            "student": name,
            "student_id": student.id if student else None,
            **counts,
            "total": total,
            "attendance_rate": round(attended * 100 / total, 1) if total else None,
        }
