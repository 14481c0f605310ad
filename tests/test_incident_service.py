from datetime import date

import pytest
from sqlalchemy import event

from errors import NotFoundError, ValidationError
from identity import StudentRef
from incident_stats import DateRange
from models import IncidentView

TODAY = date(2024, 3, 20)


@pytest.fixture
def ana(students):
    return students.save_student(
        {
            "first_name": "Ana",
            "last_name": "Torres",
            "grade": "5",
            "section": "A",
            "tutor": {"name": "Marta Díaz"},
        }
    )


def _incident(**overrides):
    payload = {
        "student_name": "Ana Torres",
        "category": "behavior",
        "severity": "moderate",
        "description": "Interrumpió la clase varias veces",
        "date": "2024-03-05",
        "teacher": "Mr. Rivera",
    }
    payload.update(overrides)
    return payload


def test_positive_incident_is_resolved_without_escalation(incidents, ana):
    record = incidents.add_incident(
        _incident(category="positive", severity="severe", escalation="psychology"), today=TODAY
    )
    assert record.resolved is True
    assert record.escalation is None
    assert record.severity is None
    assert record.status == "Normal"
    assert [change.status for change in record.history] == ["Normal"]


def test_incident_links_student_and_section_tutor(incidents, ana):
    record = incidents.add_incident(_incident(student_name="  Ana Torres "), today=TODAY)
    assert record.student_id == ana.id
    assert record.student_name == "Ana Torres"
    assert record.tutor_name == "Marta Díaz"
    assert record.status == "Pending"
    assert record.resolved is False


def test_incident_by_id_uses_current_name(incidents, ana):
    record = incidents.add_incident(_incident(student_id=ana.id, student_name="Old Name"), today=TODAY)
    assert record.student_name == "Ana Torres"


def test_unknown_name_is_stored_name_only(incidents):
    record = incidents.add_incident(_incident(student_name="Nuevo Alumno"), today=TODAY)
    assert record.student_id is None
    assert record.student_name == "Nuevo Alumno"


def test_unknown_id_is_not_found(incidents):
    with pytest.raises(NotFoundError):
        incidents.add_incident(
            _incident(student_name=None, student_id="3f2b8c1e-9a4d-4e6f-8b2a-1c3d5e7f9a0b"), today=TODAY
        )


def test_invalid_payload(incidents, ana):
    with pytest.raises(ValidationError):
        incidents.add_incident(_incident(description="corto"), today=TODAY)
    with pytest.raises(ValidationError):
        incidents.add_incident(_incident(date="2024-03-21"), today=TODAY)
    with pytest.raises(ValidationError):
        incidents.add_incident(_incident(escalation="police"), today=TODAY)


def test_legacy_spanish_values_are_normalised(incidents, ana):
    record = incidents.add_incident(
        _incident(category="conducta", severity="grave", escalation="psicología"), today=TODAY
    )
    assert (record.category, record.severity, record.escalation) == ("behavior", "severe", "psychology")


def test_mark_resolved(incidents, ana):
    record = incidents.add_incident(_incident(escalation="director"), today=TODAY)
    resolved = incidents.mark_resolved(record.id)
    assert resolved.resolved is True
    assert resolved.resolved_by == "Director"
    assert resolved.status == "Resolved"
    assert resolved.resolution_date is not None
    assert [change.status for change in resolved.history] == ["Pending", "Resolved"]
    with pytest.raises(NotFoundError):
        incidents.mark_resolved("missing")


def test_change_status_keeps_history(incidents, ana):
    record = incidents.add_incident(_incident(), today=TODAY)
    incidents.change_status(record.id, "In-review", "Coordinación")
    updated = incidents.change_status(record.id, "cerrada", "Director")
    assert updated.status == "Closed"
    assert updated.resolved is True
    assert [(c.status, c.changed_by) for c in updated.history] == [
        ("Pending", "Mr. Rivera"),
        ("In-review", "Coordinación"),
        ("Closed", "Director"),
    ]
    with pytest.raises(ValidationError):
        incidents.change_status(record.id, "Archived")


def test_positive_status_cannot_change(incidents, ana):
    record = incidents.add_incident(_incident(category="positive"), today=TODAY)
    with pytest.raises(ValidationError):
        incidents.change_status(record.id, "Pending")


def test_escalated_list(incidents, ana):
    first = incidents.add_incident(_incident(escalation="psychology"), today=TODAY)
    second = incidents.add_incident(_incident(escalation="nursing"), today=TODAY)
    incidents.add_incident(_incident(escalation="none"), today=TODAY)
    incidents.add_incident(_incident(category="positive", escalation="director"), today=TODAY)
    resolved = incidents.add_incident(_incident(escalation="director"), today=TODAY)
    incidents.mark_resolved(resolved.id)

    assert [item.id for item in incidents.list_escalated()] == [second.id, first.id]
    assert [item.id for item in incidents.list_escalated("psychology")] == [first.id]


def test_seen_is_tracked_per_role(incidents, ana):
    first = incidents.add_incident(_incident(), today=TODAY)
    second = incidents.add_incident(_incident(), today=TODAY)
    assert incidents.unseen_count() == 2

    assert incidents.mark_seen(first.id) is True
    assert incidents.mark_seen(first.id) is False
    assert incidents.mark_many_seen([first.id, second.id], "psychology") == 2

    assert incidents.seen_ids() == {first.id}
    assert incidents.seen_ids("psychology") == {first.id, second.id}
    assert incidents.unseen_count("director") == 1
    with pytest.raises(ValidationError):
        incidents.seen_ids("janitor")
    with pytest.raises(NotFoundError):
        incidents.mark_seen("missing")


def test_incidents_for_student_include_legacy_rows(incidents, students):
    legacy = incidents.add_incident(_incident(student_name="Luis Pérez"), today=TODAY)
    luis = students.save_student({"first_name": "Luis", "last_name": "Pérez"})
    linked = incidents.add_incident(_incident(student_id=luis.id), today=TODAY)
    incidents.add_incident(_incident(student_name="Otro Alumno"), today=TODAY)

    found = incidents.incidents_for_student(StudentRef(id=luis.id))
    assert {item.id for item in found} == {legacy.id, linked.id}
    assert {item.student_id for item in found} == {luis.id}


def test_list_filters(incidents, ana):
    incidents.add_incident(_incident(date="2024-02-10"), today=TODAY)
    march = incidents.add_incident(_incident(severity="severe"), today=TODAY)
    incidents.add_incident(_incident(category="positive"), today=TODAY)

    march_range = DateRange(date(2024, 3, 1), date(2024, 3, 31))
    assert len(incidents.list_incidents(date_range=march_range)) == 2
    assert [item.id for item in incidents.list_incidents(severity="grave")] == [march.id]
    assert len(incidents.list_incidents(category="positive")) == 1
    assert len(incidents.list_incidents(resolved=False)) == 2


def test_mark_many_seen_counts_rows_after_a_concurrent_mark(incidents, ana, session_factory):
    first = incidents.add_incident(_incident(), today=TODAY)
    second = incidents.add_incident(_incident(), today=TODAY)

    def racing_factory():
        session = session_factory()

        def other_request_marks_first(_session):
            with session_factory() as other:
                other.add(IncidentView(incident_id=first.id, viewer_role="psychology"))
                other.commit()

        event.listen(session, "before_commit", other_request_marks_first, once=True)
        return session

    incidents._session_factory = racing_factory
    assert incidents.mark_many_seen([first.id, second.id], "psychology") == 1

    incidents._session_factory = session_factory
    assert incidents.seen_ids("psychology") == {first.id, second.id}
