"""
Export the incident dashboard report to PDF.

Usage:
    python report_export.py --start 2024-03-01 --end 2024-03-31

Optional arguments:
    --database-url  SQLAlchemy URL (defaults to DATABASE_URL / incidents.db)
    --output        Output PDF filename (defaults to incident_report_<start>_<end>.pdf)
    --with-ai       Ask Gemini for the narrative sections before rendering
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from datetime import datetime
from typing import List

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from ai import GENERAL_REPORT_LABEL, request_ai_summary
from db import DATABASE_URL, build_session_factory
from incident_stats import DateRange
from incident_service import IncidentManager
from records import CATEGORIES, SEVERITIES
from report_orchestrator import ReportSnapshot, build_snapshot
from settings import ScoringSettingsManager
from student_service import StudentManager
from text_reconstructor import REPORT_HEADER_RE, split_into_items

BOTTOM_MARGIN = 100


def _wrap_text(text: str, max_chars: int = 90) -> List[str]:
    words = text.split()
    lines: List[str] = []
    current: List[str] = []
    for word in words:
        if current and sum(len(w) for w in current) + len(current) + len(word) > max_chars:
            lines.append(" ".join(current))
            current = [word]
        else:
            current.append(word)
    if current:
        lines.append(" ".join(current))
    return lines if lines else [""]


def _range_label(date_range: DateRange) -> str:
    start = date_range.start.isoformat() if date_range.start else "beginning"
    end = date_range.end.isoformat() if date_range.end else "today"
    return f"{start} to {end}"


def _undated_note(report: ReportSnapshot) -> str | None:
    undated = report.stats.undated
    if not undated:
        return None
    if report.date_range.is_open:
        return f"Incidents without a valid date (included in the totals): {undated}"
    return f"Incidents without a valid date (not in range totals): {undated}"


def render_report_pdf(report: ReportSnapshot, output_path: str, title: str = "Incident Report") -> str:
    c = canvas.Canvas(output_path, pagesize=A4)
    width, height = A4
    margin = 20 * mm
    y = height - margin

    def draw_header():
        nonlocal y
        c.setFont("Helvetica-Bold", 16)
        c.drawString(margin, y, title)
        y -= 18
        c.setFont("Helvetica", 11)
        c.drawString(margin, y, f"Period: {_range_label(report.date_range)}")
        y -= 14
        c.drawString(margin, y, f"Generated: {datetime.utcnow().strftime('%Y-%m-%d %H:%M UTC')}")
        y -= 22

    def ensure_space(needed: int = 0):
        nonlocal y
        if y - needed < BOTTOM_MARGIN:
            c.showPage()
            y = height - margin
            draw_header()

    def draw_heading(text: str):
        nonlocal y
        ensure_space(30)
        c.setFont("Helvetica-Bold", 12)
        c.drawString(margin, y, text)
        y -= 16

    def draw_lines(lines: List[str], indent: int = 0, size: int = 10):
        nonlocal y
        c.setFont("Helvetica", size)
        for line in lines:
            ensure_space()
            c.setFont("Helvetica", size)
            c.drawString(margin + indent, y, line)
            y -= size + 2

    def draw_items(items: List[str], empty: str):
        nonlocal y
        if not items:
            draw_lines([empty], indent=12, size=9)
            y -= 6
            return
        for idx, item in enumerate(items, start=1):
            wrapped = _wrap_text(item, 95)
            draw_lines([f"{idx}. {wrapped[0]}"] + [f"   {line}" for line in wrapped[1:]], indent=12, size=9)
        y -= 6

    draw_header()

    stats = report.stats
    draw_heading("Summary statistics")
    draw_lines(
        [
            f"Total incidents: {stats.total}    Students involved: {stats.unique_student_count}",
            "By category: " + ", ".join(f"{key} {stats.counts_by_category.get(key, 0)}" for key in CATEGORIES),
            "By severity: " + ", ".join(f"{key} {stats.counts_by_severity.get(key, 0)}" for key in SEVERITIES),
        ]
    )
    note = _undated_note(report)
    if note:
        draw_lines([note], size=9)
    y -= 8

    draw_heading("Standout students")
    if report.standouts:
        for idx, item in enumerate(report.standouts, start=1):
            draw_lines(
                [f"{idx}. {item.student_name}  points {item.points}  positives {item.positives}  negatives {item.negatives}"],
                indent=12,
                size=9,
            )
    else:
        draw_lines(["No standout students in this period."], indent=12, size=9)
    y -= 6

    draw_heading("Students at risk")
    if report.at_risk:
        for idx, item in enumerate(report.at_risk, start=1):
            draw_lines(
                [f"{idx}. {item.student_name}  severe {item.severe}  points {item.points}"],
                indent=12,
                size=9,
            )
    else:
        draw_lines(["No students at risk in this period."], indent=12, size=9)
    y -= 6

    if report.teacher_outliers:
        draw_heading("Teachers reporting above average")
        draw_lines([f"{item['teacher']}: {item['count']}" for item in report.teacher_outliers], indent=12, size=9)
        y -= 6

    draw_heading("Summary")
    draw_items(report.summary_items, "No text available")
    draw_heading("Alerts")
    draw_items(report.alert_items, "No alerts")
    draw_heading("Recommendations")
    draw_items(report.recommendation_items, "No text available")

    c.save()
    return output_path


def main():
    parser = argparse.ArgumentParser(description="Export the incident dashboard report to PDF.")
    parser.add_argument("--start", help="First day of the period (YYYY-MM-DD)")
    parser.add_argument("--end", help="Last day of the period (YYYY-MM-DD)")
    parser.add_argument("--database-url", dest="database_url", default=DATABASE_URL)
    parser.add_argument("--output", dest="output", help="Output PDF filename")
    parser.add_argument("--with-ai", dest="with_ai", action="store_true", help="Include the AI narrative")
    args = parser.parse_args()

    try:
        date_range = DateRange.from_strings(args.start, args.end)
    except ValueError as exc:
        sys.stderr.write(f"Invalid date range: {exc}\n")
        sys.exit(1)

    session_factory = build_session_factory(args.database_url)
    students = StudentManager(session_factory)
    incidents = IncidentManager(session_factory, students)
    scoring = ScoringSettingsManager(session_factory=session_factory)

    report, window = build_snapshot(
        incidents.list_incidents(),
        students.list_students(),
        date_range,
        weights=scoring.weights(),
        standout_limit=scoring.standout_limit,
        at_risk_min_severe=scoring.at_risk_min_severe,
    )
    if not window:
        sys.stderr.write(f"No incidents recorded for {_range_label(date_range)}.\n")
        sys.exit(1)
    if args.with_ai:
        summary = request_ai_summary(incidents=window, student_label=GENERAL_REPORT_LABEL)
        report = replace(
            report,
            summary_items=split_into_items(summary.get("resumen"), REPORT_HEADER_RE),
            recommendation_items=split_into_items(summary.get("recomendaciones"), REPORT_HEADER_RE),
            alert_items=split_into_items(summary.get("alertas"), REPORT_HEADER_RE),
            ai_error=summary.get("error"),
        )

    suffix = f"{args.start or 'all'}_{args.end or 'today'}"
    output_path = os.path.abspath(args.output or f"incident_report_{suffix}.pdf")
    render_report_pdf(report, output_path)
    print(f"Generated report with {report.stats.total} incident(s): {output_path}")


if __name__ == "__main__":
    main()
