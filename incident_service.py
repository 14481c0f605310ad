from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef, normalize_ref
from incident_stats import DateRange, filter_by_range
from models import Incident, IncidentStatusChange, IncidentView
from records import (
    CATEGORY_POSITIVE,
    DEFAULT_VIEWER_ROLE,
    ESCALATION_TARGETS,
    STATUS_CLOSED,
    STATUS_NORMAL,
    STATUS_PENDING,
    STATUS_RESOLVED,
    STATUSES,
    VIEWER_ROLES,
    IncidentRecord,
    normalize_category,
    normalize_escalation,
    normalize_severity,
    normalize_status,
)
from student_service import StudentManager
from validation import validate_incident_payload

logger = logging.getLogger(__name__)

DEFAULT_RESOLVER = "Director"


def _check_role(role: Optional[str]) -> str:
    role = (role or DEFAULT_VIEWER_ROLE).strip().lower()
    if role not in VIEWER_ROLES:
        raise ValidationError(f"unknown viewer role: {role}")
    return role


class IncidentManager:
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

    def add_incident(self, payload: Dict[str, Any], today: Optional[date] = None) -> IncidentRecord:
        """Record a new incident reported by a teacher.

        The student is resolved by id first and by full name second. A name
        that matches no student is kept as a legacy name-only reference; an
        unknown id raises NotFoundError. Positive incidents are stored as
        resolved with status Normal and no escalation.
        """
        if not isinstance(payload, dict):
            raise ValidationError("expected JSON payload")
        validate_incident_payload(payload, today=today)
        ref = normalize_ref(StudentRef.from_json(payload))
        student = self.students.resolve(ref)
        if student is None and ref.id and not ref.name:
            raise NotFoundError(f"student not found: {ref.id}")

        category = normalize_category(payload.get("category"))
        now = datetime.utcnow()
        teacher = (payload.get("teacher") or "").strip() or None
        incident = Incident(
            id=str(uuid.uuid4()),
            category=category,
            subcategory=(payload.get("subcategory") or "").strip() or None,
            description=payload["description"].strip(),
            date=str(payload["date"]).strip()[:10],
            timestamp=now,
            teacher=teacher,
            location=(payload.get("location") or "").strip() or None,
        )
        if student:
            incident.student_id = student.id
            incident.student_name = student.display_name
            incident.tutor_name = (
                self.students.section_tutor(student.grade, student.section) or student.tutor.get("name")
            )
        else:
            logger.warning("No student matches %s, storing name-only incident", ref.name)
            incident.student_id = None
            incident.student_name = ref.name
            incident.tutor_name = None

        if category == CATEGORY_POSITIVE:
            incident.severity = None
            incident.escalation = None
            incident.resolved = True
            incident.resolution_date = now
            incident.status = STATUS_NORMAL
        else:
            incident.severity = normalize_severity(payload.get("severity"))
            escalation = normalize_escalation(payload.get("escalation"))
            if escalation and escalation not in ESCALATION_TARGETS:
                raise ValidationError(f"unknown escalation target: {payload.get('escalation')}")
            incident.escalation = escalation
            incident.resolved = False
            incident.status = STATUS_PENDING
        incident.history.append(
            IncidentStatusChange(status=incident.status, changed_at=now, changed_by=teacher)
        )

        with self._session_factory() as session:
            session.add(incident)
            self._commit(session, "record incident")
            record = IncidentRecord.from_model(incident)
        logger.info(
            "Recorded %s incident %s for %s",
            record.category,
            record.id,
            record.student_name,
        )
        return record

    def get_incident(self, incident_id: str) -> IncidentRecord:
        with self._session_factory() as session:
            row = session.get(Incident, incident_id)
            if row is None:
                raise NotFoundError(f"incident not found: {incident_id}")
            return IncidentRecord.from_model(row)

    def list_incidents(
        self,
        date_range: Optional[DateRange] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        escalation: Optional[str] = None,
        teacher: Optional[str] = None,
        resolved: Optional[bool] = None,
    ) -> list[IncidentRecord]:
        with self._session_factory() as session:
            query = session.query(Incident)
            if category:
                query = query.filter(Incident.category == normalize_category(category))
            if severity:
                query = query.filter(Incident.severity == normalize_severity(severity))
            if escalation:
                query = query.filter(Incident.escalation == normalize_escalation(escalation))
            if teacher:
                query = query.filter(Incident.teacher == teacher)
            if resolved is not None:
                query = query.filter(Incident.resolved.is_(resolved))
            rows = query.order_by(Incident.timestamp.desc()).all()
            records = [IncidentRecord.from_model(row) for row in rows]
        if date_range is None:
            return records
        selected, _ = filter_by_range(records, date_range)
        return selected

    def incidents_for_student(self, ref: StudentRef | str, date_range: Optional[DateRange] = None) -> list[IncidentRecord]:
        """Incidents of one student, including legacy rows that only carry the name."""
        ref = normalize_ref(ref)
        student = self.students.resolve(ref)
        with self._session_factory() as session:
            query = session.query(Incident)
            if student:
                query = query.filter(
                    or_(
                        Incident.student_id == student.id,
                        (Incident.student_id.is_(None)) & (Incident.student_name == student.display_name),
                    )
                )
            elif ref.name:
                query = query.filter(Incident.student_name == ref.name)
            else:
                raise NotFoundError(f"student not found: {ref}")
            rows = query.order_by(Incident.timestamp.desc()).all()
            records = [IncidentRecord.from_model(row) for row in rows]
        if date_range is None:
            return records
        selected, _ = filter_by_range(records, date_range)
        return selected

    def list_escalated(self, target: Optional[str] = None) -> list[IncidentRecord]:
        """Open, non-positive incidents referred to a department, newest first."""
        with self._session_factory() as session:
            query = session.query(Incident).filter(
                Incident.category != CATEGORY_POSITIVE,
                Incident.escalation.isnot(None),
                Incident.resolved.is_(False),
            )
            if target:
                query = query.filter(Incident.escalation == normalize_escalation(target))
            rows = query.order_by(Incident.timestamp.desc()).all()
            return [IncidentRecord.from_model(row) for row in rows]

    def mark_resolved(self, incident_id: str, resolved_by: Optional[str] = None) -> IncidentRecord:
        resolved_by = resolved_by or DEFAULT_RESOLVER
        now = datetime.utcnow()
        with self._session_factory() as session:
            row = session.get(Incident, incident_id)
            if row is None:
                raise NotFoundError(f"incident not found: {incident_id}")
            row.resolved = True
            row.resolution_date = now
            row.resolved_by = resolved_by
            if row.category != CATEGORY_POSITIVE:
                row.status = STATUS_RESOLVED
            row.history.append(
                IncidentStatusChange(status=row.status, changed_at=now, changed_by=resolved_by)
            )
            self._commit(session, "resolve incident")
            record = IncidentRecord.from_model(row)
        logger.info("Incident %s resolved by %s", incident_id, resolved_by)
        return record

    def change_status(self, incident_id: str, status: str, changed_by: Optional[str] = None) -> IncidentRecord:
        normalized = normalize_status(status)
        if normalized not in STATUSES:
            raise ValidationError(f"unknown status: {status}")
        now = datetime.utcnow()
        with self._session_factory() as session:
            row = session.get(Incident, incident_id)
            if row is None:
                raise NotFoundError(f"incident not found: {incident_id}")
            if row.category == CATEGORY_POSITIVE and normalized != STATUS_NORMAL:
                raise ValidationError("positive incidents keep the Normal status")
            row.status = normalized
            if normalized in (STATUS_RESOLVED, STATUS_CLOSED):
                row.resolved = True
                row.resolution_date = row.resolution_date or now
                row.resolved_by = row.resolved_by or changed_by or DEFAULT_RESOLVER
            elif row.category != CATEGORY_POSITIVE:
                row.resolved = False
                row.resolution_date = None
                row.resolved_by = None
            row.history.append(
                IncidentStatusChange(status=normalized, changed_at=now, changed_by=changed_by)
            )
            self._commit(session, "change incident status")
            record = IncidentRecord.from_model(row)
        logger.info("Incident %s moved to %s", incident_id, normalized)
        return record

    def mark_seen(self, incident_id: str, role: Optional[str] = None) -> bool:
        return self.mark_many_seen([incident_id], role) == 1

    def mark_many_seen(self, incident_ids: Iterable[str], role: Optional[str] = None) -> int:
        """Mark incidents as seen for ``role``; returns how many were newly marked."""
        role = _check_role(role)
        ids = [incident_id for incident_id in dict.fromkeys(incident_ids) if incident_id]
        if not ids:
            return 0
        with self._session_factory() as session:
            known = {row[0] for row in session.query(Incident.id).filter(Incident.id.in_(ids)).all()}
            missing = [incident_id for incident_id in ids if incident_id not in known]
            if missing:
                raise NotFoundError(f"incident not found: {', '.join(missing)}")
            already = {
                row[0]
                for row in session.query(IncidentView.incident_id)
                .filter(IncidentView.viewer_role == role, IncidentView.incident_id.in_(ids))
                .all()
            }
            new_ids = [incident_id for incident_id in ids if incident_id not in already]
            session.add_all([IncidentView(incident_id=incident_id, viewer_role=role) for incident_id in new_ids])
            try:
                session.commit()
            except IntegrityError:
                # another request marked some of the rows first
                session.rollback()
                logger.info("Concurrent seen marks for role %s, retrying row by row", role)
                return self._mark_each_seen(session, new_ids, role)
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not mark incidents as seen: {exc}") from exc
        return len(new_ids)

    def _mark_each_seen(self, session, incident_ids: list[str], role: str) -> int:
        marked = 0
        for incident_id in incident_ids:
            session.add(IncidentView(incident_id=incident_id, viewer_role=role))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                continue
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"could not mark incidents as seen: {exc}") from exc
            marked += 1
        return marked

    def seen_ids(self, role: Optional[str] = None) -> set[str]:
        role = _check_role(role)
        with self._session_factory() as session:
            rows = session.query(IncidentView.incident_id).filter(IncidentView.viewer_role == role).all()
            return {row[0] for row in rows}

    def unseen_count(self, role: Optional[str] = None) -> int:
        """Open non-positive incidents the role has not opened yet."""
        seen = self.seen_ids(role)
        with self._session_factory() as session:
            rows = (
                session.query(Incident.id)
                .filter(Incident.category != CATEGORY_POSITIVE, Incident.resolved.is_(False))
                .all()
            )
        return sum(1 for row in rows if row[0] not in seen)
