from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Optional

import pandas as pd
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from db import read_after_write
from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef, display_name, normalize_ref, resolve_student, split_full_name
from models import (
    AttendanceEntry,
    AttendedStudent,
    Incident,
    IncidentDraft,
    SectionTutor,
    Student,
    StudentMark,
)
from records import StudentRecord
from validation import validate_student_payload

logger = logging.getLogger(__name__)

# Tables that keep a copy of the student's display name next to the id.
NAME_KEYED_MODELS = (Incident, AttendanceEntry, StudentMark, AttendedStudent, IncidentDraft)

SIMPLE_FIELDS = ("first_name", "last_name", "grade", "section", "age", "birth_date", "photo_ref")
GROUP_FIELDS = {
    "contact": {"name": "contact_name", "phone": "contact_phone", "email": "contact_email"},
    "guardian": {
        "name": "guardian_name",
        "relation": "guardian_relation",
        "phone": "guardian_phone",
        "alt_phone": "guardian_alt_phone",
        "email": "guardian_email",
        "address": "guardian_address",
    },
    "tutor": {"name": "tutor_name", "phone": "tutor_phone", "email": "tutor_email"},
}

# Roster spreadsheet header -> payload key
EXCEL_COLUMNS = {
    "First Name": "first_name",
    "Last Name": "last_name",
    "Grade": "grade",
    "Section": "section",
    "Age": "age",
    "Birth Date": "birth_date",
    "Guardian": "guardian.name",
    "Guardian Relation": "guardian.relation",
    "Guardian Phone": "guardian.phone",
    "Guardian Email": "guardian.email",
    "Tutor": "tutor.name",
    "Tutor Email": "tutor.email",
    "Contact Phone": "contact.phone",
    "Contact Email": "contact.email",
}


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def student_rows_filter(model, student: Optional[StudentRecord], name: Optional[str]):
    """Filter for the rows of ``model`` that belong to a student, legacy name-only rows included."""
    if student is not None:
        return or_(
            model.student_id == student.id,
            model.student_id.is_(None) & (model.student_name == student.display_name),
        )
    if name:
        return model.student_name == name
    raise NotFoundError("student not found")


class StudentManager:
    def __init__(self, session_factory: Callable, sleep: Callable[[float], None] | None = None):
        self._session_factory = session_factory
        self._sleep = sleep

    def list_students(self, grade: Optional[str] = None, section: Optional[str] = None) -> list[StudentRecord]:
        with self._session_factory() as session:
            query = session.query(Student)
            if grade:
                query = query.filter(Student.grade == grade)
            if section:
                query = query.filter(Student.section == section)
            rows = query.order_by(Student.last_name, Student.first_name).all()
            return [StudentRecord.from_model(row) for row in rows]

    def get_by_id(self, student_id: str) -> Optional[StudentRecord]:
        if not student_id:
            return None
        with self._session_factory() as session:
            row = session.get(Student, student_id)
            return StudentRecord.from_model(row) if row else None

    def get_by_name(self, name: str) -> Optional[StudentRecord]:
        ref = normalize_ref(name)
        if ref.id:
            return self.get_by_id(ref.id)
        if not ref.name:
            return None
        first, last = split_full_name(ref.name)
        with self._session_factory() as session:
            row = (
                session.query(Student)
                .filter(Student.first_name == first, Student.last_name == last)
                .first()
            )
            if row:
                return StudentRecord.from_model(row)
        # multi-word surnames do not split on the last space
        return resolve_student(StudentRef(name=ref.name), self.list_students())

    def resolve(self, ref: StudentRef | str | None) -> Optional[StudentRecord]:
        ref = normalize_ref(ref)
        if ref.id:
            student = self.get_by_id(ref.id)
            if student:
                return student
            if not ref.name:
                return None
            logger.warning("Student id %s not found, trying name %s", ref.id, ref.name)
        if ref.name:
            return self.get_by_name(ref.name)
        return None

    def require(self, ref: StudentRef | str | None) -> StudentRecord:
        student = self.resolve(ref)
        if student is None:
            raise NotFoundError(f"student not found: {normalize_ref(ref)}")
        return student

    def reference_columns(self, ref: StudentRef | str | None) -> tuple[Optional[str], str]:
        """The (student_id, student_name) pair to store for ``ref``.

        A name that matches no student is kept as a name-only reference; an
        unknown id on its own raises NotFoundError.
        """
        ref = normalize_ref(ref)
        student = self.resolve(ref)
        if student is not None:
            return student.id, student.display_name
        if not ref.name:
            raise NotFoundError(f"student not found: {ref}")
        logger.warning("No student matches %s, storing a name-only reference", ref.name)
        return None, ref.name

    def section_tutor(self, grade: Optional[str], section: Optional[str]) -> Optional[str]:
        """Tutor assigned to the grade and section, else the tutor named on one of its students."""
        if not grade or not section:
            return None
        with self._session_factory() as session:
            assignment = (
                session.query(SectionTutor)
                .filter(SectionTutor.grade == grade, SectionTutor.section == section)
                .one_or_none()
            )
            if assignment is not None:
                return assignment.tutor.name
            row = (
                session.query(Student.tutor_name)
                .filter(
                    Student.grade == grade,
                    Student.section == section,
                    Student.tutor_name.isnot(None),
                )
                .first()
            )
            return row[0] if row else None

    def _find_existing(self, session, payload: Dict[str, Any], existing_id: Optional[str]) -> Optional[Student]:
        if existing_id:
            row = session.get(Student, existing_id)
            if row is None:
                raise NotFoundError(f"student not found: {existing_id}")
            return row
        if isinstance(payload.get("id"), str) and payload["id"]:
            row = session.get(Student, payload["id"])
            if row:
                return row
        first = _clean(payload.get("first_name"))
        last = _clean(payload.get("last_name"))
        if isinstance(first, str) and isinstance(last, str):
            return (
                session.query(Student)
                .filter(Student.first_name == first, Student.last_name == last)
                .first()
            )
        return None

    @staticmethod
    def _apply(row: Student, payload: Dict[str, Any]) -> None:
        # keys missing from the payload keep their stored value
        for key in SIMPLE_FIELDS:
            if key in payload:
                value = _clean(payload[key])
                if key == "age" and value is not None:
                    value = int(value)
                elif key in ("grade", "section") and isinstance(value, int):
                    value = str(value)
                setattr(row, key, value)
        for group, columns in GROUP_FIELDS.items():
            section = payload.get(group)
            if isinstance(section, dict):
                for sub_key, column in columns.items():
                    if sub_key in section:
                        setattr(row, column, _clean(section[sub_key]))
            for column in columns.values():
                if column in payload:
                    setattr(row, column, _clean(payload[column]))

    @staticmethod
    def _cascade_name(session, student_id: str, previous_name: Optional[str], new_name: str) -> None:
        legacy_names = {new_name}
        if previous_name:
            legacy_names.add(previous_name)
        for model in NAME_KEYED_MODELS:
            session.query(model).filter(model.student_id == student_id).update(
                {model.student_name: new_name}, synchronize_session=False
            )
            session.query(model).filter(
                model.student_id.is_(None),
                model.student_name.in_(legacy_names),
            ).update(
                {model.student_id: student_id, model.student_name: new_name},
                synchronize_session=False,
            )

    def save_student(self, payload: Dict[str, Any], existing_id: Optional[str] = None) -> StudentRecord:
        """Create or update a student.

        With ``existing_id`` the row is updated in place; otherwise an
        existing row is matched by id, then by first and last name, so saving
        never duplicates a student. Renames are copied onto every
        NAME_KEYED_MODELS row of the student, and legacy rows that only carry
        the name get the student id attached.
        """
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        with self._session_factory() as session:
            row = self._find_existing(session, payload, existing_id)
            validate_student_payload(payload, partial=row is not None)
            previous_name = None
            if row is None:
                row = Student(id=str(uuid.uuid4()))
                session.add(row)
            else:
                previous_name = display_name(row)
            self._apply(row, payload)
            new_name = display_name(row)
            student_id = row.id
            try:
                self._cascade_name(session, student_id, previous_name, new_name)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("Failed to save student %s", new_name)
                raise PersistenceError(f"could not save student: {exc}") from exc
        if previous_name and previous_name != new_name:
            logger.info("Renamed student %s from %s to %s", student_id, previous_name, new_name)
        else:
            logger.info("Saved student %s (%s)", new_name, student_id)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return read_after_write(lambda: self.get_by_id(student_id), f"student {student_id}", **kwargs)

    def delete_student(self, student_id: str) -> None:
        with self._session_factory() as session:
            row = session.get(Student, student_id)
            if row is None:
                raise NotFoundError(f"student not found: {student_id}")
            try:
                session.delete(row)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not delete student: {exc}") from exc
        logger.info("Deleted student %s", student_id)

    def list_grades(self) -> list[str]:
        with self._session_factory() as session:
            rows = session.query(Student.grade).filter(Student.grade.isnot(None)).distinct().all()
            return sorted(row[0] for row in rows)

    def list_sections(self, grade: Optional[str] = None) -> list[str]:
        with self._session_factory() as session:
            query = session.query(Student.section).filter(Student.section.isnot(None))
            if grade:
                query = query.filter(Student.grade == grade)
            return sorted(row[0] for row in query.distinct().all())

    def import_from_excel(self, path: str) -> dict[str, Any]:
        """Load a roster workbook whose first sheet uses the EXCEL_COLUMNS headers."""
        df = pd.read_excel(path)
        df = df.rename(columns=lambda column: str(column).strip())
        missing = [column for column in ("First Name", "Last Name") if column not in df.columns]
        if missing:
            raise ValidationError(f"missing columns: {', '.join(missing)}")
        df = df.dropna(subset=["First Name", "Last Name"])
        saved = 0
        errors: list[str] = []
        for index, row in df.iterrows():
            payload: Dict[str, Any] = {}
            for column, key in EXCEL_COLUMNS.items():
                if column not in df.columns or pd.isna(row.get(column)):
                    continue
                value = row.get(column)
                if key == "age":
                    value = int(value)
                elif key == "birth_date" and hasattr(value, "date"):
                    value = value.date().isoformat()
                else:
                    value = str(value).strip()
                if "." in key:
                    group, sub_key = key.split(".", 1)
                    payload.setdefault(group, {})[sub_key] = value
                else:
                    payload[key] = value
            try:
                self.save_student(payload)
                saved += 1
            except (ValidationError, PersistenceError) as exc:
                errors.append(f"row {index + 2}: {exc}")
        logger.info("Imported %s student(s) from %s with %s error(s)", saved, path, len(errors))
        return {"saved": saved, "errors": errors}
