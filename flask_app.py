from __future__ import annotations

import io
import logging
from dataclasses import replace
from datetime import date
from typing import Any, Callable

from flask import Blueprint, Flask, current_app, jsonify, request, send_file

from ai import GENERAL_REPORT_LABEL, request_ai_summary
from class_service import ClassManager
from db import get_session, init_db
from errors import NotFoundError, PersistenceError, ValidationError
from followup_service import FollowupManager
from identity import StudentRef, normalize_ref
from incident_service import IncidentManager
from incident_stats import DateRange, aggregate_by_class, daily_counts
from marks_service import MarkManager
from report_export import render_report_pdf
from report_orchestrator import ReportOrchestrator, build_snapshot
from scoring import performance_summary, score
from settings import SECRET_KEY, ScoringSettingsManager
from student_service import StudentManager
from text_reconstructor import REPORT_HEADER_RE, SUMMARY_HEADER_RE, split_into_items
from tutor_service import TutorManager

api_bp = Blueprint("api_bp", __name__)


def _services() -> dict[str, Any]:
    return current_app.extensions["incident_dashboard"]


def _error(message: str, status: int, errors: list[str] | None = None):
    body: dict[str, Any] = {"error": message}
    if errors:
        body["errors"] = errors
    return jsonify(body), status


def _json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not payload or not isinstance(payload, dict):
        raise ValidationError("expected JSON payload")
    return payload


def _date_range_from(source) -> DateRange:
    return DateRange.from_strings(source.get("start"), source.get("end"))


def _invalidate_report() -> None:
    orchestrator: ReportOrchestrator = _services()["orchestrator"]
    if orchestrator.snapshot is not None:
        orchestrator.invalidate()


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok"})


@api_bp.route("/api/students", methods=["GET"])
def list_students():
    students = _services()["students"].list_students(
        grade=request.args.get("grade"),
        section=request.args.get("section"),
    )
    return jsonify({"count": len(students), "students": [student.to_dict() for student in students]})


@api_bp.route("/api/students", methods=["POST"])
def save_student():
    try:
        payload = _json_payload()
        existing_id = payload.pop("existing_id", None)
        student = _services()["students"].save_student(payload, existing_id=existing_id)
    except ValidationError as exc:
        current_app.logger.warning("Invalid student payload: %s", exc)
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    except Exception:
        current_app.logger.exception("Failed to save student")
        return _error("unable to save student", 500)
    _invalidate_report()
    return jsonify(student.to_dict()), 201 if not existing_id else 200


@api_bp.route("/api/students/lookup", methods=["GET"])
def lookup_student():
    ref = normalize_ref(StudentRef(id=request.args.get("id"), name=request.args.get("name")))
    if not ref.id and not ref.name:
        return _error("id or name query parameter is required", 400)
    student = _services()["students"].resolve(ref)
    if student is None:
        return _error(f"student not found: {ref}", 404)
    return jsonify(student.to_dict())


@api_bp.route("/api/students/import", methods=["POST"])
def import_students():
    upload = request.files.get("file")
    if upload is None:
        return _error("missing 'file' upload", 400)
    try:
        result = _services()["students"].import_from_excel(upload)
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except Exception:
        current_app.logger.exception("Failed to import students")
        return _error("unable to import students", 500)
    _invalidate_report()
    return jsonify(result)


@api_bp.route("/api/students/<student_id>", methods=["GET"])
def get_student(student_id: str):
    student = _services()["students"].get_by_id(student_id)
    if student is None:
        return _error(f"student not found: {student_id}", 404)
    return jsonify(student.to_dict())


@api_bp.route("/api/students/<student_id>", methods=["PUT"])
def update_student(student_id: str):
    try:
        student = _services()["students"].save_student(_json_payload(), existing_id=student_id)
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    except Exception:
        current_app.logger.exception("Failed to update student %s", student_id)
        return _error("unable to update student", 500)
    _invalidate_report()
    return jsonify(student.to_dict())


@api_bp.route("/api/students/<student_id>", methods=["DELETE"])
def delete_student(student_id: str):
    try:
        _services()["students"].delete_student(student_id)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"status": "deleted", "id": student_id})


@api_bp.route("/api/students/<path:ref>/profile", methods=["GET"])
def student_profile(ref: str):
    services = _services()
    try:
        date_range = _date_range_from(request.args)
        student = services["students"].require(ref)
        incidents = services["incidents"].incidents_for_student(StudentRef(id=student.id), date_range)
        attendance = services["classes"].attendance_summary(StudentRef(id=student.id), date_range)
    except ValueError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    result = score(incidents, services["scoring"].weights())
    return jsonify(
        {
            "student": student.to_dict(),
            "score": result.to_dict(),
            "performance": performance_summary(result),
            "attendance": attendance,
            "incidents": [incident.to_dict() for incident in incidents],
        }
    )


@api_bp.route("/api/incidents", methods=["GET"])
def list_incidents():
    services = _services()
    try:
        date_range = _date_range_from(request.args)
        student = request.args.get("student")
        if student:
            incidents = services["incidents"].incidents_for_student(student, date_range)
        else:
            incidents = services["incidents"].list_incidents(
                date_range=date_range,
                category=request.args.get("category"),
                severity=request.args.get("severity"),
                escalation=request.args.get("escalation"),
                teacher=request.args.get("teacher"),
            )
        seen = services["incidents"].seen_ids(request.args.get("role"))
    except ValueError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    items = []
    for incident in incidents:
        item = incident.to_dict()
        item["seen"] = incident.id in seen
        items.append(item)
    return jsonify({"count": len(items), "incidents": items})


@api_bp.route("/api/incidents", methods=["POST"])
def create_incident():
    try:
        incident = _services()["incidents"].add_incident(_json_payload())
    except ValidationError as exc:
        current_app.logger.warning("Invalid incident payload: %s", exc)
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    except Exception:
        current_app.logger.exception("Failed to record incident")
        return _error("unable to record incident", 500)
    current_app.logger.info("Recorded incident %s for %s", incident.id, incident.student_name)
    _invalidate_report()
    return jsonify(incident.to_dict()), 201


@api_bp.route("/api/incidents/escalated", methods=["GET"])
def escalated_incidents():
    incidents = _services()["incidents"].list_escalated(request.args.get("target"))
    return jsonify({"count": len(incidents), "incidents": [incident.to_dict() for incident in incidents]})


@api_bp.route("/api/incidents/seen", methods=["GET"])
def seen_incidents():
    manager = _services()["incidents"]
    role = request.args.get("role")
    try:
        seen = manager.seen_ids(role)
        unseen = manager.unseen_count(role)
    except ValidationError as exc:
        return _error(str(exc), 400)
    return jsonify({"seen": sorted(seen), "unseen_count": unseen})


@api_bp.route("/api/incidents/seen", methods=["POST"])
def mark_incidents_seen():
    try:
        payload = _json_payload()
        ids = payload.get("ids")
        if ids is None and payload.get("id"):
            ids = [payload["id"]]
        if not isinstance(ids, list):
            raise ValidationError("ids must be a list")
        marked = _services()["incidents"].mark_many_seen(ids, payload.get("role"))
    except ValidationError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"marked": marked})


@api_bp.route("/api/incidents/<incident_id>", methods=["GET"])
def get_incident(incident_id: str):
    try:
        incident = _services()["incidents"].get_incident(incident_id)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    return jsonify(incident.to_dict())


@api_bp.route("/api/incidents/<incident_id>", methods=["PATCH"])
def update_incident(incident_id: str):
    manager: IncidentManager = _services()["incidents"]
    try:
        payload = _json_payload()
        user = payload.get("user") or payload.get("resolved_by")
        if payload.get("resolved") is True:
            incident = manager.mark_resolved(incident_id, user)
        elif payload.get("status"):
            incident = manager.change_status(incident_id, payload["status"], user)
        else:
            raise ValidationError("expected 'resolved': true or a 'status'")
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    _invalidate_report()
    return jsonify(incident.to_dict())


@api_bp.route("/api/classes", methods=["GET"])
def list_classes():
    classes = _services()["classes"].list_classes(
        teacher=request.args.get("teacher"),
        grade=request.args.get("grade"),
        section=request.args.get("section"),
    )
    return jsonify({"count": len(classes), "classes": [item.to_dict() for item in classes]})


@api_bp.route("/api/classes", methods=["POST"])
def save_class():
    try:
        record = _services()["classes"].add_class(_json_payload())
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify(record.to_dict()), 201


@api_bp.route("/api/grades", methods=["GET"])
def list_grades():
    students = _services()["students"]
    grade = request.args.get("grade")
    if grade:
        return jsonify({"grade": grade, "sections": students.list_sections(grade)})
    return jsonify({"grades": students.list_grades()})


@api_bp.route("/api/tutors", methods=["GET"])
def list_tutors():
    tutors = _services()["tutors"].list_tutors()
    return jsonify({"count": len(tutors), "tutors": [tutor.to_dict() for tutor in tutors]})


@api_bp.route("/api/tutors", methods=["POST"])
def save_tutors():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return _error("expected a tutor or a list of tutors", 400)
    try:
        tutors = _services()["tutors"].save_tutors(payload)
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"count": len(tutors), "tutors": [tutor.to_dict() for tutor in tutors]})


@api_bp.route("/api/tutors/<tutor_id>", methods=["DELETE"])
def delete_tutor(tutor_id: str):
    try:
        _services()["tutors"].delete_tutor(tutor_id)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"status": "deleted", "id": tutor_id})


@api_bp.route("/api/section-tutors", methods=["GET"])
def section_tutors():
    manager = _services()["tutors"]
    grade, section = request.args.get("grade"), request.args.get("section")
    if grade and section:
        assignment = manager.assignment_for_section(grade, section)
        return jsonify(assignment.to_dict() if assignment else None)
    tutor_id = request.args.get("tutor_id")
    if tutor_id:
        assignment = manager.assignment_for_tutor(tutor_id)
        return jsonify(assignment.to_dict() if assignment else None)
    assignments = manager.list_assignments()
    return jsonify({"count": len(assignments), "assignments": [item.to_dict() for item in assignments]})


@api_bp.route("/api/section-tutors", methods=["POST"])
def change_section_tutors():
    manager = _services()["tutors"]
    payload = request.get_json(silent=True)
    try:
        if isinstance(payload, list):
            assignments = manager.replace_assignments(payload)
            result = {"count": len(assignments), "assignments": [item.to_dict() for item in assignments]}
        elif isinstance(payload, dict) and payload.get("action") == "set":
            assignment = manager.assign_section(payload.get("grade"), payload.get("section"), payload.get("tutor_id"))
            result = assignment.to_dict()
        elif isinstance(payload, dict) and payload.get("action") == "remove":
            result = {"removed": manager.remove_assignment(payload.get("grade"), payload.get("section"))}
        else:
            raise ValidationError("expected a list of assignments or an action of 'set' or 'remove'")
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify(result)


@api_bp.route("/api/marks", methods=["GET"])
def list_marks():
    manager = _services()["marks"]
    student = request.args.get("student")
    try:
        marks = manager.marks_for_student(student) if student else manager.list_marks()
    except NotFoundError as exc:
        return _error(str(exc), 404)
    return jsonify({"count": len(marks), "marks": [mark.to_dict() for mark in marks]})


@api_bp.route("/api/marks", methods=["POST"])
def save_marks():
    manager = _services()["marks"]
    payload = request.get_json(silent=True)
    try:
        if isinstance(payload, list):
            return jsonify({"count": manager.replace_marks(payload)})
        if not isinstance(payload, dict):
            raise ValidationError("expected a mark or a list of marks")
        mark = manager.add_mark(payload)
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify(mark.to_dict()), 201


@api_bp.route("/api/marks/<mark_id>", methods=["DELETE"])
def delete_mark(mark_id: str):
    try:
        _services()["marks"].delete_mark(mark_id)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"status": "deleted", "id": mark_id})


def _optional_date(value: str | None) -> date | None:
    return date.fromisoformat(value[:10]) if value else None


@api_bp.route("/api/attended-students", methods=["GET"])
def list_attended_students():
    try:
        attended_on = _optional_date(request.args.get("date"))
    except ValueError as exc:
        return _error(str(exc), 400)
    records = _services()["followups"].list_attended(request.args.get("teacher"), attended_on)
    return jsonify({"count": len(records), "attended": [record.to_dict() for record in records]})


@api_bp.route("/api/attended-students", methods=["POST"])
def mark_student_attended():
    try:
        payload = _json_payload()
        ref = StudentRef(id=payload.get("student_id"), name=payload.get("student_name"))
        created = _services()["followups"].mark_attended(ref, payload.get("date"), payload.get("teacher"))
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify({"created": created}), 201 if created else 200


@api_bp.route("/api/attended-students/check", methods=["GET"])
def check_student_attended():
    student, teacher = request.args.get("student"), request.args.get("teacher")
    if not student or not teacher:
        return _error("student and teacher query parameters are required", 400)
    try:
        attended_on = _optional_date(request.args.get("date"))
    except ValueError as exc:
        return _error(str(exc), 400)
    return jsonify({"attended": _services()["followups"].is_attended(student, teacher, attended_on)})


@api_bp.route("/api/incident-drafts", methods=["GET", "DELETE"])
def incident_draft():
    student = request.args.get("student")
    if not student:
        return _error("student query parameter is required", 400)
    manager = _services()["followups"]
    if request.method == "DELETE":
        try:
            removed = manager.delete_draft(student)
        except PersistenceError as exc:
            return _error(str(exc), 500)
        return jsonify({"removed": removed})
    try:
        draft = manager.get_draft(student)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    return jsonify(draft.to_dict())


@api_bp.route("/api/incident-drafts", methods=["POST"])
def save_incident_draft():
    try:
        draft = _services()["followups"].save_draft(_json_payload())
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    return jsonify(draft.to_dict())


@api_bp.route("/api/attendance", methods=["GET"])
def list_attendance():
    try:
        date_range = _date_range_from(request.args)
        class_id = request.args.get("class_id", type=int)
    except ValueError as exc:
        return _error(str(exc), 400)
    records = _services()["classes"].list_attendance(
        date_range=date_range,
        class_id=class_id,
        teacher=request.args.get("teacher"),
        grade=request.args.get("grade"),
        section=request.args.get("section"),
    )
    return jsonify({"count": len(records), "records": [record.to_dict() for record in records]})


@api_bp.route("/api/attendance", methods=["POST"])
def record_attendance():
    try:
        record = _services()["classes"].record_attendance(_json_payload())
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except PersistenceError as exc:
        return _error(str(exc), 500)
    except Exception:
        current_app.logger.exception("Failed to record attendance")
        return _error("unable to record attendance", 500)
    return jsonify(record.to_dict()), 201


@api_bp.route("/api/attendance/summary", methods=["GET"])
def attendance_summary():
    student = request.args.get("student")
    if not student:
        return _error("student query parameter is required", 400)
    try:
        summary = _services()["classes"].attendance_summary(student, _date_range_from(request.args))
    except ValueError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    return jsonify(summary)


def _report_for(date_range: DateRange):
    services = _services()
    scoring: ScoringSettingsManager = services["scoring"]
    students = services["students"].list_students()
    incidents = services["incidents"].list_incidents()
    snapshot, window = build_snapshot(
        incidents,
        students,
        date_range,
        weights=scoring.weights(),
        standout_limit=scoring.standout_limit,
        at_risk_min_severe=scoring.at_risk_min_severe,
    )
    return snapshot, window, students


@api_bp.route("/api/reports/summary", methods=["GET"])
def report_summary():
    try:
        date_range = _date_range_from(request.args)
    except ValueError as exc:
        return _error(str(exc), 400)
    snapshot, window, students = _report_for(date_range)
    body = snapshot.to_dict()
    body["daily_counts"] = daily_counts(window)
    body["by_class"] = aggregate_by_class(window, students)
    return jsonify(body)


@api_bp.route("/api/reports/dashboard", methods=["GET", "POST"])
def report_dashboard():
    orchestrator: ReportOrchestrator = _services()["orchestrator"]
    if request.method == "POST":
        payload = request.get_json(silent=True) or {}
        try:
            orchestrator.set_date_range(_date_range_from(payload))
        except ValueError as exc:
            return _error(str(exc), 400)
    elif orchestrator.snapshot is None:
        orchestrator.refresh()
    snapshot = orchestrator.snapshot
    return jsonify(
        {
            "state": orchestrator.state,
            "error": orchestrator.last_error,
            "report": snapshot.to_dict() if snapshot else None,
        }
    )


@api_bp.route("/api/reports/ai", methods=["POST"])
def report_ai():
    services = _services()
    summarize: Callable[..., dict] = services["summarize"]
    try:
        payload = _json_payload()
        if payload.get("incident_id"):
            incident = services["incidents"].get_incident(payload["incident_id"])
            result = summarize(incident=incident)
            header = SUMMARY_HEADER_RE
        elif payload.get("student"):
            student = services["students"].resolve(payload["student"])
            label = student.display_name if student else payload["student"]
            incidents = services["incidents"].incidents_for_student(
                StudentRef(id=student.id) if student else payload["student"],
                _date_range_from(payload),
            )
            result = summarize(incidents=incidents, student_label=label)
            header = SUMMARY_HEADER_RE
        else:
            _, window, _ = _report_for(_date_range_from(payload))
            result = summarize(incidents=window, student_label=GENERAL_REPORT_LABEL)
            header = REPORT_HEADER_RE
    except ValidationError as exc:
        return _error(str(exc), 400, exc.errors)
    except ValueError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    result = dict(result)
    result["resumen_items"] = split_into_items(result.get("resumen"), header)
    result["recomendaciones_items"] = split_into_items(result.get("recomendaciones"), header)
    result["alertas_items"] = split_into_items(result.get("alertas"), header)
    return jsonify(result)


@api_bp.route("/api/reports/export.pdf", methods=["GET"])
def export_report():
    try:
        date_range = _date_range_from(request.args)
    except ValueError as exc:
        return _error(str(exc), 400)
    snapshot, _, _ = _report_for(date_range)
    orchestrator: ReportOrchestrator = _services()["orchestrator"]
    current = orchestrator.snapshot
    if current is not None and current.date_range == date_range:
        snapshot = replace(
            snapshot,
            summary_items=current.summary_items,
            recommendation_items=current.recommendation_items,
            alert_items=current.alert_items,
        )
    buffer = io.BytesIO()
    render_report_pdf(snapshot, buffer)
    buffer.seek(0)
    return send_file(
        buffer,
        mimetype="application/pdf",
        as_attachment=True,
        download_name="incident_report.pdf",
    )


@api_bp.route("/api/settings/scoring", methods=["GET", "POST"])
def scoring_settings():
    manager: ScoringSettingsManager = _services()["scoring"]
    if request.method == "POST":
        try:
            manager.update(_json_payload())
        except ValueError as exc:
            return _error(str(exc), 400)
        _invalidate_report()
    return jsonify(manager.to_dict())


def create_app(
    session_factory: Callable | None = None,
    summarize: Callable[..., dict] | None = None,
    timer_factory: Callable | None = None,
    settings_path: str | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = SECRET_KEY
    if session_factory is None:
        init_db()
        session_factory = get_session
    summarize = summarize or request_ai_summary
    students = StudentManager(session_factory)
    incidents = IncidentManager(session_factory, students)
    classes = ClassManager(session_factory, students)
    tutors = TutorManager(session_factory)
    marks = MarkManager(session_factory, students)
    followups = FollowupManager(session_factory, students)
    scoring = ScoringSettingsManager(storage_path=settings_path, session_factory=session_factory)
    orchestrator_kwargs = {"timer_factory": timer_factory} if timer_factory else {}
    orchestrator = ReportOrchestrator(
        fetch_incidents=incidents.list_incidents,
        fetch_students=students.list_students,
        summarize=summarize,
        settings_source=scoring,
        **orchestrator_kwargs,
    )
    app.extensions["incident_dashboard"] = {
        "students": students,
        "incidents": incidents,
        "classes": classes,
        "tutors": tutors,
        "marks": marks,
        "followups": followups,
        "scoring": scoring,
        "orchestrator": orchestrator,
        "summarize": summarize,
    }
    app.register_blueprint(api_bp)
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_app().run(debug=True, port=4000)
