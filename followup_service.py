"""Teacher follow-up state kept between visits.

Attended marks record that a teacher already dealt with a student on a given
day. Incident drafts hold the category, severity and teacher picked for a
student before the incident form is opened; there is at most one per student.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef, normalize_ref
from models import AttendedStudent, IncidentDraft
from records import AttendedRecord, DraftRecord, normalize_category, normalize_severity
from student_service import StudentManager, student_rows_filter
from validation import validate_date_not_future, validate_draft_payload, validate_required, validate_text

logger = logging.getLogger(__name__)


def _check_teacher(teacher: Any) -> str:
    validate_required(teacher, "Teacher")
    validate_text(teacher, "Teacher")
    return teacher.strip()


class FollowupManager:
    def __init__(self, session_factory: Callable, students: StudentManager):
        self._session_factory = session_factory
        self.students = students

    def mark_attended(
        self,
        ref: StudentRef | str,
        attended_on: Any,
        teacher: Any,
        today: Optional[date] = None,
    ) -> bool:
        """Record that ``teacher`` attended the student on ``attended_on``; False when already recorded."""
        ref = normalize_ref(ref)
        if not ref.id and not ref.name:
            raise ValidationError("Student is required")
        attended_on = validate_date_not_future(attended_on, "Date", today)
        teacher = _check_teacher(teacher)
        student_id, student_name = self.students.reference_columns(ref)
        with self._session_factory() as session:
            exists = (
                session.query(AttendedStudent.id)
                .filter(
                    AttendedStudent.student_name == student_name,
                    AttendedStudent.date == attended_on,
                    AttendedStudent.teacher == teacher,
                )
                .first()
            )
            if exists:
                return False
            session.add(
                AttendedStudent(
                    student_id=student_id,
                    student_name=student_name,
                    date=attended_on,
                    teacher=teacher,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # the same mark was written by a concurrent request
                session.rollback()
                return False
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not mark student as attended: {exc}") from exc
        logger.info("%s attended %s on %s", teacher, student_name, attended_on)
        return True

    def list_attended(self, teacher: Optional[str] = None, attended_on: Optional[date] = None) -> list[AttendedRecord]:
        with self._session_factory() as session:
            query = session.query(AttendedStudent)
            if teacher:
                query = query.filter(AttendedStudent.teacher == teacher)
            if attended_on:
                query = query.filter(AttendedStudent.date == attended_on)
            rows = query.order_by(AttendedStudent.date.desc(), AttendedStudent.student_name).all()
            return [AttendedRecord.from_model(row) for row in rows]

    def is_attended(self, ref: StudentRef | str, teacher: str, attended_on: Optional[date] = None) -> bool:
        """Whether ``teacher`` attended the student, on ``attended_on`` or on any day."""
        ref = normalize_ref(ref)
        student = self.students.resolve(ref)
        if student is None and not ref.name:
            return False
        with self._session_factory() as session:
            query = session.query(AttendedStudent.id).filter(
                student_rows_filter(AttendedStudent, student, ref.name),
                AttendedStudent.teacher == teacher,
            )
            if attended_on:
                query = query.filter(AttendedStudent.date == attended_on)
            return query.first() is not None

    def save_draft(self, payload: Dict[str, Any]) -> DraftRecord:
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        validate_draft_payload(payload)
        student_id, student_name = self.students.reference_columns(
            StudentRef(id=payload.get("student_id"), name=payload.get("student_name"))
        )
        with self._session_factory() as session:
            row = session.query(IncidentDraft).filter(IncidentDraft.student_name == student_name).one_or_none()
            if row is None:
                row = IncidentDraft(student_name=student_name)
                session.add(row)
            row.student_id = student_id
            row.category = normalize_category(payload.get("category"))
            row.severity = normalize_severity(payload.get("severity"))
            row.teacher = (payload.get("teacher") or "").strip() or None
            row.updated_at = datetime.utcnow()
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("Failed to save incident draft for %s", student_name)
                raise PersistenceError(f"could not save incident draft: {exc}") from exc
            record = DraftRecord.from_model(row)
        logger.info("Saved incident draft for %s", student_name)
        return record

    def _draft_row(self, session, ref: StudentRef | str) -> Optional[IncidentDraft]:
        ref = normalize_ref(ref)
        student = self.students.resolve(ref)
        if student is None and not ref.name:
            return None
        return session.query(IncidentDraft).filter(student_rows_filter(IncidentDraft, student, ref.name)).first()

    def get_draft(self, ref: StudentRef | str) -> DraftRecord:
        with self._session_factory() as session:
            row = self._draft_row(session, ref)
            if row is None:
                raise NotFoundError(f"no incident draft for {normalize_ref(ref)}")
            return DraftRecord.from_model(row)

    def delete_draft(self, ref: StudentRef | str) -> bool:
        with self._session_factory() as session:
            row = self._draft_row(session, ref)
            if row is None:
                return False
            session.delete(row)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not delete incident draft: {exc}") from exc
        logger.info("Deleted incident draft for %s", normalize_ref(ref))
        return True
