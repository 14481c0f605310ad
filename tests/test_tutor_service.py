import pytest

from errors import NotFoundError, ValidationError


@pytest.fixture
def roster(tutors):
    return tutors.save_tutors(
        [
            {"id": "t-1", "name": "Marta Díaz", "email": "marta@school.edu"},
            {"id": "t-2", "name": "Jorge Ruiz", "phone": "600 111 222"},
        ]
    )


def test_save_tutors_upserts_by_id(tutors, roster):
    assert [tutor.name for tutor in tutors.list_tutors()] == ["Jorge Ruiz", "Marta Díaz"]

    [updated] = tutors.save_tutors([{"id": "t-1", "name": "Marta Díaz López"}])
    assert updated.id == "t-1"
    assert updated.email is None
    assert len(tutors.list_tutors()) == 2

    [created] = tutors.save_tutors([{"name": "Elena Gil"}])
    assert len(created.id) == 36


def test_invalid_tutors_are_not_saved(tutors):
    with pytest.raises(ValidationError) as excinfo:
        tutors.save_tutors([{"name": "Elena Gil"}, {"name": "", "email": "nope"}, "x"])
    assert excinfo.value.errors == [
        "tutor 2: Tutor name is required",
        "tutor 2: Tutor email is not valid",
        "tutor 3: expected an object",
    ]
    assert tutors.list_tutors() == []


def test_a_tutor_looks_after_one_section(tutors, roster):
    tutors.assign_section("5", "A", "t-1")
    tutors.assign_section("5", "B", "t-1")
    assert tutors.assignment_for_section("5", "A") is None
    assert tutors.assignment_for_tutor("t-1").section == "B"

    replaced = tutors.assign_section("5", "B", "t-2")
    assert replaced.tutor_name == "Jorge Ruiz"
    assert tutors.assignment_for_tutor("t-1") is None
    assert [item.to_dict() for item in tutors.list_assignments()] == [
        {"grade": "5", "section": "B", "tutor_id": "t-2", "tutor_name": "Jorge Ruiz"}
    ]


def test_assign_section_errors(tutors, roster):
    with pytest.raises(ValidationError) as excinfo:
        tutors.assign_section("", None, "t-1")
    assert excinfo.value.errors == ["Grade is required", "Section is required"]
    with pytest.raises(NotFoundError):
        tutors.assign_section("5", "A", "missing")


def test_remove_assignment(tutors, roster):
    tutors.assign_section(5, "A", "t-1")
    assert tutors.remove_assignment("5", "A") is True
    assert tutors.remove_assignment("5", "A") is False


def test_deleting_a_tutor_frees_the_section(tutors, roster):
    tutors.assign_section("5", "A", "t-1")
    tutors.delete_tutor("t-1")
    assert tutors.assignment_for_section("5", "A") is None
    with pytest.raises(NotFoundError):
        tutors.delete_tutor("t-1")


def test_replace_assignments(tutors, roster):
    tutors.assign_section("6", "C", "t-1")
    result = tutors.replace_assignments(
        [
            {"grade": "5", "section": "A", "tutor_id": "t-1"},
            {"grade": "5", "section": "B", "tutor_id": "t-2"},
        ]
    )
    assert [(item.grade, item.section, item.tutor_id) for item in result] == [("5", "A", "t-1"), ("5", "B", "t-2")]

    with pytest.raises(ValidationError) as excinfo:
        tutors.replace_assignments(
            [
                {"grade": "5", "section": "A", "tutor_id": "t-1"},
                {"grade": "5", "section": "A", "tutor_id": "t-1"},
            ]
        )
    assert len(excinfo.value.errors) == 2
    with pytest.raises(NotFoundError):
        tutors.replace_assignments([{"grade": "5", "section": "A", "tutor_id": "missing"}])
    assert len(tutors.list_assignments()) == 2
