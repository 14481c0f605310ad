from datetime import date

import pytest

from errors import NotFoundError, ValidationError
from identity import StudentRef

TODAY = date(2024, 3, 20)


@pytest.fixture
def ana(students):
    return students.save_student({"first_name": "Ana", "last_name": "Torres", "grade": "5", "section": "A"})


def test_mark_attended_once_per_day_and_teacher(followups, ana):
    assert followups.mark_attended("Ana Torres", "2024-03-05", "Mr. Rivera", today=TODAY) is True
    assert followups.mark_attended(StudentRef(id=ana.id), "2024-03-05", "Mr. Rivera", today=TODAY) is False
    assert followups.mark_attended("Ana Torres", "2024-03-06", "Mr. Rivera", today=TODAY) is True
    assert followups.mark_attended("Ana Torres", "2024-03-06", "Ms. Ortega", today=TODAY) is True

    records = followups.list_attended(teacher="Mr. Rivera")
    assert [record.date for record in records] == [date(2024, 3, 6), date(2024, 3, 5)]
    assert records[0].student_id == ana.id
    assert len(followups.list_attended(attended_on=date(2024, 3, 6))) == 2


def test_is_attended(followups, ana):
    followups.mark_attended("Ana Torres", "2024-03-05", "Mr. Rivera", today=TODAY)
    assert followups.is_attended("Ana Torres", "Mr. Rivera") is True
    assert followups.is_attended(StudentRef(id=ana.id), "Mr. Rivera", date(2024, 3, 5)) is True
    assert followups.is_attended("Ana Torres", "Mr. Rivera", date(2024, 3, 6)) is False
    assert followups.is_attended("Ana Torres", "Ms. Ortega") is False
    assert followups.is_attended("Nadie", "Mr. Rivera") is False


def test_mark_attended_errors(followups, ana):
    with pytest.raises(ValidationError):
        followups.mark_attended("Ana Torres", "2024-04-01", "Mr. Rivera", today=TODAY)
    with pytest.raises(ValidationError):
        followups.mark_attended("Ana Torres", "2024-03-05", "  ", today=TODAY)
    with pytest.raises(ValidationError):
        followups.mark_attended(StudentRef(), "2024-03-05", "Mr. Rivera", today=TODAY)


def test_draft_is_one_per_student(followups, ana):
    first = followups.save_draft({"student_name": "Ana Torres", "category": "conducta", "severity": "grave"})
    assert (first.category, first.severity) == ("behavior", "severe")
    assert first.student_id == ana.id

    followups.save_draft({"student_id": ana.id, "category": "academic", "teacher": "Ms. Ortega"})
    draft = followups.get_draft("Ana Torres")
    assert (draft.category, draft.severity, draft.teacher) == ("academic", None, "Ms. Ortega")


def test_invalid_draft(followups):
    with pytest.raises(ValidationError) as excinfo:
        followups.save_draft({"category": "recreo", "severity": 2})
    assert excinfo.value.errors == ["Student is required", "Severity must be text", "Unknown category: recreo"]


def test_delete_draft(followups, ana):
    followups.save_draft({"student_name": "Ana Torres", "category": "positive"})
    assert followups.delete_draft(StudentRef(id=ana.id)) is True
    assert followups.delete_draft("Ana Torres") is False
    with pytest.raises(NotFoundError):
        followups.get_draft("Ana Torres")
