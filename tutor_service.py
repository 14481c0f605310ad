from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import NotFoundError, PersistenceError, ValidationError
from models import SectionTutor, Tutor
from records import SectionTutorRecord, TutorRecord
from validation import validate_required, validate_text, validate_tutor_payload

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TutorManager:
    """Tutor roster and the grade/section each tutor looks after."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def _commit(self, session, action: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to %s", action)
            raise PersistenceError(f"could not {action}: {exc}") from exc

    def list_tutors(self) -> list[TutorRecord]:
        with self._session_factory() as session:
            rows = session.query(Tutor).order_by(Tutor.name).all()
            return [TutorRecord.from_model(row) for row in rows]

    def get_tutor(self, tutor_id: str) -> TutorRecord:
        with self._session_factory() as session:
            row = session.get(Tutor, tutor_id)
            if row is None:
                raise NotFoundError(f"tutor not found: {tutor_id}")
            return TutorRecord.from_model(row)

    def save_tutors(self, tutors: Iterable[Dict[str, Any]]) -> list[TutorRecord]:
        """Create or update each tutor by id; tutors without an id get a new one."""
        tutors = list(tutors)
        errors: list[str] = []
        for index, payload in enumerate(tutors, start=1):
            if not isinstance(payload, dict):
                errors.append(f"tutor {index}: expected an object")
                continue
            try:
                validate_tutor_payload(payload)
            except ValidationError as exc:
                errors.extend(f"tutor {index}: {message}" for message in exc.errors)
        if errors:
            raise ValidationError(errors)
        saved_ids = []
        with self._session_factory() as session:
            for payload in tutors:
                tutor_id = _clean(payload.get("id")) or str(uuid.uuid4())
                row = session.get(Tutor, tutor_id)
                if row is None:
                    row = Tutor(id=tutor_id)
                    session.add(row)
                row.name = payload["name"].strip()
                row.email = _clean(payload.get("email"))
                row.phone = _clean(payload.get("phone"))
                saved_ids.append(tutor_id)
            self._commit(session, "save tutors")
        logger.info("Saved %s tutor(s)", len(saved_ids))
        return [self.get_tutor(tutor_id) for tutor_id in saved_ids]

    def delete_tutor(self, tutor_id: str) -> None:
        with self._session_factory() as session:
            row = session.get(Tutor, tutor_id)
            if row is None:
                raise NotFoundError(f"tutor not found: {tutor_id}")
            session.query(SectionTutor).filter(SectionTutor.tutor_id == tutor_id).delete(synchronize_session=False)
            session.delete(row)
            self._commit(session, "delete tutor")
        logger.info("Deleted tutor %s", tutor_id)

    def list_assignments(self) -> list[SectionTutorRecord]:
        with self._session_factory() as session:
            rows = session.query(SectionTutor).order_by(SectionTutor.grade, SectionTutor.section).all()
            return [SectionTutorRecord.from_model(row) for row in rows]

    def assignment_for_section(self, grade: str, section: str) -> Optional[SectionTutorRecord]:
        with self._session_factory() as session:
            row = (
                session.query(SectionTutor)
                .filter(SectionTutor.grade == grade, SectionTutor.section == section)
                .one_or_none()
            )
            return SectionTutorRecord.from_model(row) if row else None

    def assignment_for_tutor(self, tutor_id: str) -> Optional[SectionTutorRecord]:
        with self._session_factory() as session:
            row = session.query(SectionTutor).filter(SectionTutor.tutor_id == tutor_id).one_or_none()
            return SectionTutorRecord.from_model(row) if row else None

    def assign_section(self, grade: Any, section: Any, tutor_id: str) -> SectionTutorRecord:
        """Give ``tutor_id`` the section, replacing its current tutor and the tutor's previous section."""
        errors: list[str] = []
        for value, label in ((grade, "Grade"), (section, "Section"), (tutor_id, "Tutor")):
            try:
                validate_required(value, label)
                if label == "Tutor":
                    validate_text(value, label)
            except ValidationError as exc:
                errors.extend(exc.errors)
        if errors:
            raise ValidationError(errors)
        grade = str(grade).strip()
        section = str(section).strip()
        with self._session_factory() as session:
            if session.get(Tutor, tutor_id) is None:
                raise NotFoundError(f"tutor not found: {tutor_id}")
            session.query(SectionTutor).filter(
                SectionTutor.tutor_id == tutor_id,
                (SectionTutor.grade != grade) | (SectionTutor.section != section),
            ).delete(synchronize_session=False)
            session.flush()
            row = (
                session.query(SectionTutor)
                .filter(SectionTutor.grade == grade, SectionTutor.section == section)
                .one_or_none()
            )
            if row is None:
                row = SectionTutor(grade=grade, section=section)
                session.add(row)
            row.tutor_id = tutor_id
            self._commit(session, "assign section tutor")
        logger.info("Assigned tutor %s to %s%s", tutor_id, grade, section)
        return self.assignment_for_section(grade, section)

    def remove_assignment(self, grade: Any, section: Any) -> bool:
        validate_required(grade, "Grade")
        validate_required(section, "Section")
        grade, section = str(grade).strip(), str(section).strip()
        with self._session_factory() as session:
            removed = (
                session.query(SectionTutor)
                .filter(SectionTutor.grade == grade, SectionTutor.section == section)
                .delete(synchronize_session=False)
            )
            self._commit(session, "remove section tutor")
        if removed:
            logger.info("Removed the tutor of %s%s", grade, section)
        return bool(removed)

    def replace_assignments(self, assignments: Iterable[Dict[str, Any]]) -> list[SectionTutorRecord]:
        """Swap the whole assignment table for ``assignments`` in one transaction."""
        assignments = list(assignments)
        seen_sections: set[tuple[str, str]] = set()
        seen_tutors: set[str] = set()
        rows = []
        errors: list[str] = []
        for index, item in enumerate(assignments, start=1):
            if not isinstance(item, dict):
                errors.append(f"assignment {index}: expected an object")
                continue
            grade = _clean(item.get("grade"))
            section = _clean(item.get("section"))
            tutor_id = _clean(item.get("tutor_id"))
            if not grade or not section or not tutor_id:
                errors.append(f"assignment {index}: grade, section and tutor_id are required")
                continue
            if (grade, section) in seen_sections:
                errors.append(f"assignment {index}: {grade}{section} is listed twice")
            if tutor_id in seen_tutors:
                errors.append(f"assignment {index}: tutor {tutor_id} already has a section")
            seen_sections.add((grade, section))
            seen_tutors.add(tutor_id)
            rows.append(SectionTutor(grade=grade, section=section, tutor_id=tutor_id))
        if errors:
            raise ValidationError(errors)
        with self._session_factory() as session:
            known = {row[0] for row in session.query(Tutor.id).filter(Tutor.id.in_(seen_tutors)).all()}
            missing = sorted(seen_tutors - known)
            if missing:
                raise NotFoundError(f"tutor not found: {', '.join(missing)}")
            session.query(SectionTutor).delete(synchronize_session=False)
            session.add_all(rows)
            self._commit(session, "replace section tutors")
        logger.info("Replaced section tutors with %s assignment(s)", len(rows))
        return self.list_assignments()
