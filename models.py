from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db import Base


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True)
    first_name = Column(String, index=True, nullable=False)
    last_name = Column(String, index=True, nullable=False)
    grade = Column(String, index=True)
    section = Column(String, index=True)
    age = Column(Integer)
    birth_date = Column(String)
    contact_name = Column(String)
    contact_phone = Column(String)
    contact_email = Column(String)
    guardian_name = Column(String)
    guardian_relation = Column(String)
    guardian_phone = Column(String)
    guardian_alt_phone = Column(String)
    guardian_email = Column(String)
    guardian_address = Column(Text)
    tutor_name = Column(String)
    tutor_phone = Column(String)
    tutor_email = Column(String)
    photo_ref = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Incident(Base):
    __tablename__ = "incidents"

    id = Column(String(36), primary_key=True)
    student_id = Column(String(36), index=True)
    student_name = Column(String, index=True, nullable=False)
    category = Column(String, index=True, nullable=False)
    subcategory = Column(String)
    severity = Column(String, index=True)
    description = Column(Text, nullable=False)
    # kept as entered so malformed legacy dates are still visible
    date = Column(String, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    teacher = Column(String, index=True)
    tutor_name = Column(String)
    location = Column(String)
    escalation = Column(String, index=True)
    resolved = Column(Boolean, default=False, nullable=False)
    resolution_date = Column(DateTime)
    resolved_by = Column(String)
    status = Column(String, nullable=False)

    history = relationship(
        "IncidentStatusChange",
        order_by="IncidentStatusChange.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class IncidentStatusChange(Base):
    __tablename__ = "incident_status_changes"

    id = Column(Integer, primary_key=True)
    incident_id = Column(String(36), ForeignKey("incidents.id", ondelete="CASCADE"), index=True, nullable=False)
    status = Column(String, nullable=False)
    changed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    changed_by = Column(String)


class IncidentView(Base):
    __tablename__ = "incident_views"
    __table_args__ = (UniqueConstraint("incident_id", "viewer_role", name="uq_incident_view"),)

    id = Column(Integer, primary_key=True)
    incident_id = Column(String(36), index=True, nullable=False)
    viewer_role = Column(String, index=True, nullable=False)
    seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SchoolClass(Base):
    __tablename__ = "classes"
    __table_args__ = (UniqueConstraint("name", "grade", "section", name="uq_class"),)

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    grade = Column(String, index=True, nullable=False)
    section = Column(String, index=True, nullable=False)
    teacher = Column(String, index=True, nullable=False)
    weekdays = Column(String)


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("date", "class_id", "period", name="uq_attendance_slot"),)

    id = Column(Integer, primary_key=True)
    date = Column(Date, index=True, nullable=False)
    weekday = Column(String, nullable=False)
    class_id = Column(Integer, ForeignKey("classes.id"), index=True, nullable=False)
    grade = Column(String, nullable=False)
    section = Column(String, nullable=False)
    teacher = Column(String, nullable=False)
    period = Column(String, nullable=False)
    location = Column(String)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    school_class = relationship("SchoolClass", lazy="joined")
    entries = relationship(
        "AttendanceEntry",
        cascade="all, delete-orphan",
        order_by="AttendanceEntry.id",
        lazy="selectin",
    )


class AttendanceEntry(Base):
    __tablename__ = "attendance_entries"

    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("attendance_records.id", ondelete="CASCADE"), index=True, nullable=False)
    student_id = Column(String(36), index=True)
    student_name = Column(String, index=True, nullable=False)
    state = Column(String, nullable=False)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(Integer, nullable=False)


class Tutor(Base):
    __tablename__ = "tutors"

    id = Column(String(36), primary_key=True)
    name = Column(String, index=True, nullable=False)
    email = Column(String)
    phone = Column(String)


class SectionTutor(Base):
    """Which tutor looks after a grade/section; a tutor has at most one section."""

    __tablename__ = "section_tutors"
    __table_args__ = (
        UniqueConstraint("grade", "section", name="uq_section_tutor"),
        UniqueConstraint("tutor_id", name="uq_section_tutor_tutor"),
    )

    id = Column(Integer, primary_key=True)
    grade = Column(String, index=True, nullable=False)
    section = Column(String, index=True, nullable=False)
    tutor_id = Column(String(36), ForeignKey("tutors.id", ondelete="CASCADE"), nullable=False)

    tutor = relationship("Tutor", lazy="joined")


class StudentMark(Base):
    __tablename__ = "student_marks"

    id = Column(String(36), primary_key=True)
    student_id = Column(String(36), index=True)
    student_name = Column(String, index=True, nullable=False)
    subject = Column(String, nullable=False)
    score = Column(Float, nullable=False)
    period = Column(String)
    date = Column(String)
    teacher = Column(String)
    comment = Column(Text)
    status = Column(String)


class AttendedStudent(Base):
    __tablename__ = "attended_students"
    __table_args__ = (UniqueConstraint("student_name", "date", "teacher", name="uq_attended_student"),)

    id = Column(Integer, primary_key=True)
    student_id = Column(String(36), index=True)
    student_name = Column(String, index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)
    teacher = Column(String, index=True, nullable=False)
    attended_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class IncidentDraft(Base):
    __tablename__ = "incident_drafts"

    id = Column(Integer, primary_key=True)
    student_id = Column(String(36), index=True)
    student_name = Column(String, unique=True, nullable=False)
    category = Column(String)
    severity = Column(String)
    teacher = Column(String)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
