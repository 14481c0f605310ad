from datetime import date

import pandas as pd
import pytest

from errors import NotFoundError, PersistenceError, ValidationError
from identity import StudentRef
from models import (
    AttendanceEntry,
    AttendanceRecord,
    AttendedStudent,
    Incident,
    IncidentDraft,
    SchoolClass,
    StudentMark,
)


def _student(**overrides):
    payload = {
        "first_name": "Ana",
        "last_name": "Torres",
        "grade": "5",
        "section": "A",
        "guardian": {"name": "Rosa Torres", "phone": "600 123 456"},
        "tutor": {"name": "Marta Díaz", "email": "marta@school.edu"},
    }
    payload.update(overrides)
    return payload


def test_save_creates_student_with_uuid(students):
    student = students.save_student(_student())
    assert len(student.id) == 36
    assert student.display_name == "Ana Torres"
    assert student.guardian["phone"] == "600 123 456"
    assert students.get_by_id(student.id) == student


def test_save_never_duplicates(students):
    first = students.save_student(_student())
    second = students.save_student(_student(grade="6"))
    assert second.id == first.id
    assert second.grade == "6"
    assert len(students.list_students()) == 1


def test_update_keeps_fields_missing_from_payload(students):
    student = students.save_student(_student(age=11))
    updated = students.save_student({"section": "B"}, existing_id=student.id)
    assert updated.section == "B"
    assert updated.age == 11
    assert updated.tutor["name"] == "Marta Díaz"


def test_update_unknown_id(students):
    with pytest.raises(NotFoundError):
        students.save_student({"section": "B"}, existing_id="missing")


def test_new_student_requires_names(students):
    with pytest.raises(ValidationError):
        students.save_student({"grade": "5"})


def test_rename_cascades_to_incidents_and_attendance(students, session_factory):
    student = students.save_student(_student())
    with session_factory() as session:
        school_class = SchoolClass(name="Matemáticas", grade="5", section="A", teacher="Mr. Rivera")
        session.add(school_class)
        session.flush()
        record = AttendanceRecord(
            date=date(2024, 3, 5),
            weekday="tuesday",
            class_id=school_class.id,
            grade="5",
            section="A",
            teacher="Mr. Rivera",
            period="1",
        )
        record.entries = [AttendanceEntry(student_id=student.id, student_name="Ana Torres", state="present")]
        session.add(record)
        session.add_all(
            [
                Incident(id="i-1", student_id=student.id, student_name="Ana Torres", category="behavior",
                         description="Interrumpe la clase", date="2024-03-05", status="Pending"),
                Incident(id="i-2", student_id=None, student_name="Ana Torres", category="behavior",
                         description="Registro antiguo sin id", date="2024-02-01", status="Pending"),
            ]
        )
        session.commit()

    students.save_student({"last_name": "Torres Vega"}, existing_id=student.id)

    with session_factory() as session:
        names = {row.id: (row.student_id, row.student_name) for row in session.query(Incident).all()}
        entry = session.query(AttendanceEntry).one()
    assert names["i-1"] == (student.id, "Ana Torres Vega")
    assert names["i-2"] == (student.id, "Ana Torres Vega")
    assert entry.student_name == "Ana Torres Vega"


def test_get_by_name_handles_multi_word_surnames(students):
    students.save_student(_student(first_name="Luis", last_name="de la Cruz"))
    assert students.get_by_name("Luis de la Cruz").last_name == "de la Cruz"
    assert students.get_by_name("Nadie") is None


def test_get_by_name_routes_uuid_to_id(students):
    student = students.save_student(_student())
    assert students.get_by_name(student.id).id == student.id


def test_resolve_falls_back_to_name(students):
    student = students.save_student(_student())
    assert students.resolve("Ana Torres").id == student.id
    assert students.resolve(StudentRef(id="stale-id", name="Ana Torres")).id == student.id
    with pytest.raises(NotFoundError):
        students.require(StudentRef(id="stale-id"))


def test_section_tutor(students):
    students.save_student(_student())
    students.save_student(_student(first_name="Luis", last_name="Pérez", tutor={}))
    assert students.section_tutor("5", "A") == "Marta Díaz"
    assert students.section_tutor("6", "A") is None


def test_read_after_write_gives_up(students, monkeypatch):
    monkeypatch.setattr(students, "get_by_id", lambda student_id: None)
    with pytest.raises(PersistenceError):
        students.save_student(_student())


def test_delete(students):
    student = students.save_student(_student())
    students.delete_student(student.id)
    assert students.get_by_id(student.id) is None
    with pytest.raises(NotFoundError):
        students.delete_student(student.id)


def test_grades_and_sections(students):
    students.save_student(_student())
    students.save_student(_student(first_name="Luis", last_name="Pérez", section="B"))
    students.save_student(_student(first_name="Eva", last_name="Sanz", grade="6"))
    assert students.list_grades() == ["5", "6"]
    assert students.list_sections("5") == ["A", "B"]


def test_import_from_excel(students, tmp_path):
    path = tmp_path / "roster.xlsx"
    pd.DataFrame(
        [
            {"First Name": "Ana", "Last Name": "Torres", "Grade": "5", "Section": "A", "Age": 11, "Tutor": "Marta Díaz"},
            {"First Name": "Luis", "Last Name": "Pérez", "Grade": "5", "Section": "B", "Age": None, "Tutor": None},
            {"First Name": "X", "Last Name": "Y", "Grade": "5", "Section": "B", "Age": None, "Tutor": None},
        ]
    ).to_excel(path, index=False)

    result = students.import_from_excel(str(path))

    assert result["saved"] == 2
    assert len(result["errors"]) == 1
    ana = students.get_by_name("Ana Torres")
    assert ana.age == 11
    assert ana.tutor["name"] == "Marta Díaz"


def test_flat_contact_keys_are_validated_before_saving(students):
    with pytest.raises(ValidationError):
        students.save_student(
            {"first_name": "Ana", "last_name": "Lopez", "contact_email": "not-an-email", "guardian_phone": "x"}
        )
    assert students.list_students() == []


def test_flat_contact_keys_are_saved_when_valid(students):
    student = students.save_student(
        {"first_name": "Ana", "last_name": "Lopez", "grade": 5, "guardian_phone": "600 123 456"}
    )
    assert student.grade == "5"
    assert student.guardian["phone"] == "600 123 456"


@pytest.mark.parametrize("value", [123, ["Ana"], {"first": "Ana"}])
def test_non_text_name_is_a_validation_error(students, value):
    with pytest.raises(ValidationError, match="First name must be text"):
        students.save_student({"first_name": value, "last_name": "Lopez"})


def test_rename_cascades_to_marks_attended_and_drafts(students, session_factory):
    student = students.save_student(_student())
    with session_factory() as session:
        session.add_all(
            [
                StudentMark(id="m-1", student_id=student.id, student_name="Ana Torres", subject="Math", score=8.5),
                StudentMark(id="m-2", student_id=None, student_name="Ana Torres", subject="Art", score=9),
                AttendedStudent(
                    student_id=None, student_name="Ana Torres", date=date(2024, 3, 5), teacher="Mr. Rivera"
                ),
                IncidentDraft(student_id=student.id, student_name="Ana Torres", category="behavior"),
            ]
        )
        session.commit()

    students.save_student({"last_name": "Torres Vega"}, existing_id=student.id)

    with session_factory() as session:
        for model in (StudentMark, AttendedStudent, IncidentDraft):
            rows = session.query(model).all()
            assert {(row.student_id, row.student_name) for row in rows} == {(student.id, "Ana Torres Vega")}


def test_section_tutor_prefers_the_assignment(students, tutors):
    students.save_student(_student())
    [tutor] = tutors.save_tutors([{"name": "Jorge Ruiz"}])
    tutors.assign_section("5", "A", tutor.id)
    assert students.section_tutor("5", "A") == "Jorge Ruiz"

    tutors.remove_assignment("5", "A")
    assert students.section_tutor("5", "A") == "Marta Díaz"


def test_reference_columns(students):
    student = students.save_student(_student())
    assert students.reference_columns("Ana Torres") == (student.id, "Ana Torres")
    assert students.reference_columns(StudentRef(name="Nadie Nuevo")) == (None, "Nadie Nuevo")
    with pytest.raises(NotFoundError):
        students.reference_columns(StudentRef(id="3f2b8c1e-9a4d-4e6f-8b2a-1c3d5e7f9a0b"))
