import itertools

import pytest

from class_service import ClassManager
from db import build_session_factory
from followup_service import FollowupManager
from incident_service import IncidentManager
from marks_service import MarkManager
from records import IncidentRecord
from student_service import StudentManager
from tutor_service import TutorManager


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        self.daemon = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


@pytest.fixture
def timers():
    created = []

    def factory(interval, function):
        timer = FakeTimer(interval, function)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def session_factory(tmp_path):
    return build_session_factory(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def students(session_factory):
    return StudentManager(session_factory, sleep=lambda _: None)


@pytest.fixture
def incidents(session_factory, students):
    return IncidentManager(session_factory, students)


@pytest.fixture
def classes(session_factory, students):
    return ClassManager(session_factory, students)


@pytest.fixture
def tutors(session_factory):
    return TutorManager(session_factory)


@pytest.fixture
def marks(session_factory, students):
    return MarkManager(session_factory, students)


@pytest.fixture
def followups(session_factory, students):
    return FollowupManager(session_factory, students)


@pytest.fixture
def make_incident():
    counter = itertools.count(1)

    def factory(**overrides):
        values = {
            "id": f"inc-{next(counter)}",
            "student_id": None,
            "student_name": "Ana Torres",
            "category": "behavior",
            "description": "Interrupted the class repeatedly",
            "date": "2024-03-05",
            "severity": "moderate",
            "teacher": "Mr. Rivera",
        }
        values.update(overrides)
        return IncidentRecord(**values)

    return factory
