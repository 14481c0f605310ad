from datetime import date

import pytest

from errors import NotFoundError, ValidationError
from identity import StudentRef
from incident_stats import DateRange

TODAY = date(2024, 3, 20)


@pytest.fixture
def math_class(classes, students):
    students.save_student({"first_name": "Ana", "last_name": "Torres", "grade": "5", "section": "A"})
    students.save_student({"first_name": "Luis", "last_name": "Pérez", "grade": "5", "section": "A"})
    return classes.add_class(
        {"name": "Matemáticas", "grade": "5", "section": "A", "teacher": "Mr. Rivera", "weekdays": "Tuesday,monday"}
    )


def _attendance(class_id, **overrides):
    payload = {
        "date": "2024-03-05",
        "class_id": class_id,
        "period": "1",
        "entries": {"Ana Torres": "present", "Luis Pérez": "late"},
    }
    payload.update(overrides)
    return payload


def test_add_class_upserts(classes, math_class):
    assert math_class.weekdays == ["monday", "tuesday"]
    again = classes.add_class(
        {"name": "Matemáticas", "grade": "5", "section": "A", "teacher": "Ms. Ortega", "weekdays": ["friday"]}
    )
    assert again.id == math_class.id
    assert again.teacher == "Ms. Ortega"
    assert len(classes.list_classes()) == 1


def test_add_class_validation(classes):
    with pytest.raises(ValidationError) as exc:
        classes.add_class({"name": "Historia"})
    assert len(exc.value.errors) == 3
    with pytest.raises(ValidationError):
        classes.add_class({"name": "Historia", "grade": "5", "section": "A", "teacher": "X", "weekdays": ["funday"]})


def test_record_attendance_links_students(classes, students, math_class):
    snapshot = classes.record_attendance(_attendance(math_class.id), today=TODAY)
    assert snapshot.weekday == "tuesday"
    assert snapshot.teacher == "Mr. Rivera"
    assert snapshot.entries == {"Ana Torres": "present", "Luis Pérez": "late"}
    ana = students.get_by_name("Ana Torres")
    assert snapshot.student_ids["Ana Torres"] == ana.id


def test_same_slot_replaces_entries(classes, math_class):
    classes.record_attendance(_attendance(math_class.id), today=TODAY)
    classes.record_attendance(_attendance(math_class.id, entries={"Ana Torres": "absent"}), today=TODAY)

    records = classes.list_attendance()
    assert len(records) == 1
    assert records[0].entries == {"Ana Torres": "absent"}
    found = classes.find_attendance(date(2024, 3, 5), math_class.id, "1")
    assert found.entries == {"Ana Torres": "absent"}


def test_record_attendance_rejects_bad_input(classes, math_class):
    with pytest.raises(ValidationError):
        classes.record_attendance(_attendance(math_class.id, entries={"Ana Torres": "asleep"}), today=TODAY)
    with pytest.raises(ValidationError):
        classes.record_attendance(_attendance(math_class.id, date="2024-03-21"), today=TODAY)
    with pytest.raises(ValidationError):
        classes.record_attendance(_attendance("abc"), today=TODAY)
    with pytest.raises(NotFoundError):
        classes.record_attendance(_attendance(999), today=TODAY)


def test_attendance_summary(classes, math_class):
    classes.record_attendance(_attendance(math_class.id), today=TODAY)
    classes.record_attendance(_attendance(math_class.id, period="2", entries={"Luis Pérez": "absent"}), today=TODAY)
    classes.record_attendance(
        _attendance(math_class.id, date="2024-02-01", entries={"Luis Pérez": "present"}), today=TODAY
    )

    summary = classes.attendance_summary(StudentRef(name="Luis Pérez"))
    assert (summary["present"], summary["late"], summary["absent"], summary["total"]) == (1, 1, 1, 3)
    assert summary["attendance_rate"] == 66.7

    march = DateRange(date(2024, 3, 1), date(2024, 3, 31))
    assert classes.attendance_summary("Luis Pérez", march)["total"] == 2
    assert classes.attendance_summary("Nadie")["attendance_rate"] is None
