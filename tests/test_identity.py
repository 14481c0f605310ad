import pytest

from errors import NotFoundError
from identity import (
    StudentRef,
    canonical_key_map,
    looks_like_uuid,
    normalize_ref,
    require_student,
    resolve_student,
    split_full_name,
    student_key,
)
from records import StudentRecord

ANA_ID = "3f2b8c1e-9a4d-4e6f-8b2a-1c3d5e7f9a0b"
LUIS_ID = "a1b2c3d4-e5f6-4a1b-9c2d-3e4f5a6b7c8d"


@pytest.fixture
def roster():
    return [
        StudentRecord(id=ANA_ID, first_name="Ana", last_name="Torres", grade="5", section="A"),
        StudentRecord(id=LUIS_ID, first_name="Luis", last_name="Pérez", grade="5", section="B"),
    ]


def test_resolves_by_id_first(roster):
    assert resolve_student(StudentRef(id=LUIS_ID, name="Ana Torres"), roster).id == LUIS_ID


def test_resolves_by_trimmed_display_name(roster):
    assert resolve_student(StudentRef(name="Luis Pérez"), roster).id == LUIS_ID


def test_name_match_is_case_sensitive(roster):
    assert resolve_student(StudentRef(name="luis pérez"), roster) is None


def test_uuid_in_name_slot_is_treated_as_id(roster):
    assert normalize_ref(ANA_ID.upper()).id == ANA_ID.upper()
    assert resolve_student(ANA_ID, roster).id == ANA_ID


def test_unknown_id_falls_back_to_name(roster):
    ref = StudentRef(id="00000000-0000-4000-8000-000000000000", name="Ana Torres")
    assert resolve_student(ref, roster).id == ANA_ID


def test_unknown_id_without_name_is_not_found(roster):
    assert resolve_student(StudentRef(id="missing"), roster) is None
    with pytest.raises(NotFoundError):
        require_student(StudentRef(id="missing"), roster)


def test_id_and_name_resolution_agree(roster):
    for student in roster:
        by_id = resolve_student(StudentRef(id=student.id), roster)
        by_name = resolve_student(StudentRef(name=student.display_name), roster)
        assert by_id is by_name


def test_looks_like_uuid():
    assert looks_like_uuid(ANA_ID)
    assert not looks_like_uuid("Ana Torres")
    assert not looks_like_uuid(None)


def test_split_full_name_uses_last_token_as_surname():
    assert split_full_name("María José Ruiz") == ("María José", "Ruiz")
    assert split_full_name("Ana") == ("Ana", "")
    assert split_full_name("  ") == ("", "")


def test_canonical_keys_merge_legacy_rows(roster, make_incident):
    with_id = make_incident(student_id=ANA_ID, student_name="Ana Torres")
    legacy = make_incident(student_name="Ana Torres")
    stranger = make_incident(student_name="Nadie Conocido")
    keys = canonical_key_map([with_id, legacy, stranger], roster)
    assert keys[with_id.id] == keys[legacy.id] == f"id:{ANA_ID}"
    assert keys[stranger.id] == student_key(stranger) == "name:Nadie Conocido"
