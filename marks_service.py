from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef, normalize_ref
from models import StudentMark
from records import MARK_PERIODS, MarkRecord
from student_service import StudentManager, student_rows_filter
from validation import validate_mark_payload

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _period_order(mark: MarkRecord) -> int:
    period = (mark.period or "").upper()
    return MARK_PERIODS.index(period) + 1 if period in MARK_PERIODS else 0


class MarkManager:
    """Subject marks per student, keyed by student id with the display name alongside."""

    def __init__(self, session_factory: Callable, students: StudentManager):
        self._session_factory = session_factory
        self.students = students

    def _row(self, payload: Dict[str, Any]) -> StudentMark:
        student_id, student_name = self.students.reference_columns(
            StudentRef(id=payload.get("student_id"), name=payload.get("student_name"))
        )
        period = _text(payload.get("period"))
        return StudentMark(
            id=_text(payload.get("id")) or str(uuid.uuid4()),
            student_id=student_id,
            student_name=student_name,
            subject=payload["subject"].strip(),
            score=float(payload["score"]),
            period=period.upper() if period else None,
            date=_text(payload.get("date")),
            teacher=_text(payload.get("teacher")),
            comment=_text(payload.get("comment")),
            status=_text(payload.get("status")),
        )

    def list_marks(self) -> list[MarkRecord]:
        with self._session_factory() as session:
            rows = session.query(StudentMark).order_by(StudentMark.date.desc(), StudentMark.subject).all()
            return [MarkRecord.from_model(row) for row in rows]

    def marks_for_student(self, ref: StudentRef | str) -> list[MarkRecord]:
        """Marks of one student ordered by period (Q1 to Q4, unknown first) then subject."""
        ref = normalize_ref(ref)
        student = self.students.resolve(ref)
        if student is None and not ref.name:
            raise NotFoundError(f"student not found: {ref}")
        with self._session_factory() as session:
            rows = session.query(StudentMark).filter(student_rows_filter(StudentMark, student, ref.name)).all()
            marks = [MarkRecord.from_model(row) for row in rows]
        return sorted(marks, key=lambda mark: (_period_order(mark), mark.subject))

    def add_mark(self, payload: Dict[str, Any]) -> MarkRecord:
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        validate_mark_payload(payload)
        row = self._row(payload)
        with self._session_factory() as session:
            session.merge(row)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("Failed to save mark for %s", row.student_name)
                raise PersistenceError(f"could not save mark: {exc}") from exc
        logger.info("Saved %s mark %.1f for %s", row.subject, row.score, row.student_name)
        return MarkRecord.from_model(row)

    def replace_marks(self, items: Iterable[Dict[str, Any]]) -> int:
        """Replace every stored mark with ``items``; nothing is written when one of them is invalid."""
        items = list(items)
        errors: list[str] = []
        for index, payload in enumerate(items, start=1):
            if not isinstance(payload, dict):
                errors.append(f"mark {index}: expected an object")
                continue
            try:
                validate_mark_payload(payload)
            except ValidationError as exc:
                errors.extend(f"mark {index}: {message}" for message in exc.errors)
        if errors:
            raise ValidationError(errors)
        rows = [self._row(payload) for payload in items]
        with self._session_factory() as session:
            session.query(StudentMark).delete(synchronize_session=False)
            session.add_all(rows)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("Failed to replace marks")
                raise PersistenceError(f"could not save marks: {exc}") from exc
        logger.info("Replaced marks with %s row(s)", len(rows))
        return len(rows)

    def delete_mark(self, mark_id: str) -> None:
        with self._session_factory() as session:
            row = session.get(StudentMark, mark_id)
            if row is None:
                raise NotFoundError(f"mark not found: {mark_id}")
            session.delete(row)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not delete mark: {exc}") from exc
        logger.info("Deleted mark %s", mark_id)
