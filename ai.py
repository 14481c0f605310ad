"""Gemini-based helpers for the incident and report narratives."""
from __future__ import annotations

import logging
import os
from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from google import genai
from google.genai import types

from errors import AICollaboratorError, ValidationError
from incident_stats import (
    counts_by_teacher,
    dominant_category,
    effective_severity,
    frequent_students,
    severe_share,
    teacher_outliers,
)
from records import CATEGORY_POSITIVE, SEVERITY_SEVERE
from settings import AI_TIMEOUT_SECONDS, GEMINI_API_KEY
from text_reconstructor import clean_markdown, extract_section, split_run_on

logger = logging.getLogger(__name__)

_CLIENT: genai.Client | None = None
_MODEL_NAMES = [
    name.strip()
    for name in os.getenv(
        "GEMINI_MODELS",
        "gemini-2.5-flash,gemini-2.0-flash,gemini-2.5-flash-lite,gemini-2.0-flash-lite",
    ).split(",")
    if name.strip()
]

GENERAL_REPORT_LABEL = "Reporte General"
SUMMARY_UNAVAILABLE = "Análisis no disponible"
RECOMMENDATIONS_UNAVAILABLE = "Recomendaciones no disponibles"
DEFAULT_RECOMMENDATION = "Consulte con el tutor o coordinador para determinar acciones específicas."
NO_INCIDENTS_SUMMARY = "No se registraron incidencias en el período seleccionado."

_CATEGORY_LABELS = {
    "attendance": "ausencia",
    "behavior": "conducta",
    "academic": "académica",
    "positive": "positivo",
}
_SEVERITY_LABELS = {"mild": "leve", "moderate": "moderada", "severe": "grave"}

GenerateFn = Callable[[str, int], str]


def _get_client() -> genai.Client:
    """Return a cached Gemini client instance."""
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    if not GEMINI_API_KEY:
        raise AICollaboratorError("GEMINI_API_KEY environment variable is not configured.")
    _CLIENT = genai.Client(
        api_key=GEMINI_API_KEY,
        http_options=types.HttpOptions(timeout=int(AI_TIMEOUT_SECONDS * 1000)),
    )
    return _CLIENT


def _iter_text_parts(chunks: Iterable[types.GenerateContentResponse]) -> Iterable[str]:
    """Yield plain text fragments from a streaming Gemini response."""
    for chunk in chunks:
        candidates = getattr(chunk, "candidates", None)
        if not candidates:
            continue
        content = getattr(candidates[0], "content", None)
        if not content:
            continue
        for part in getattr(content, "parts", []) or []:
            text = getattr(part, "text", None)
            if text:
                yield text


def generate_text(prompt: str, max_output_tokens: int = 1500) -> str:
    """Send ``prompt`` to the first Gemini model that answers with text."""
    client = _get_client()
    contents = [types.Content(role="user", parts=[types.Part.from_text(text=prompt)])]
    config = types.GenerateContentConfig(
        temperature=0.7,
        top_p=0.95,
        top_k=40,
        max_output_tokens=max_output_tokens,
    )
    last_error: Optional[str] = None
    for model_name in _MODEL_NAMES:
        try:
            chunks = client.models.generate_content_stream(
                model=model_name,
                contents=contents,
                config=config,
            )
            result = "".join(_iter_text_parts(chunks)).strip()
        except Exception as exc:  # SDK, HTTP and timeout errors all mean "try the next model"
            logger.warning("Gemini model %s failed: %s", model_name, exc)
            last_error = f"{model_name}: {exc}"
            continue
        if result:
            logger.debug("Gemini model %s answered (%s chars)", model_name, len(result))
            return result
        last_error = f"{model_name}: empty response"
    raise AICollaboratorError(f"No response received from Gemini ({last_error or 'no models configured'})")


def _category_label(value: Optional[str]) -> str:
    return _CATEGORY_LABELS.get(value or "", value or "N/A")


def _severity_label(incident) -> str:
    severity = effective_severity(incident)
    return _SEVERITY_LABELS.get(severity, "N/A") if severity else "N/A"


def _distribution(incidents: Sequence) -> str:
    by_category = Counter(_category_label(incident.category) for incident in incidents)
    by_severity = Counter(_severity_label(incident) for incident in incidents if incident.category != CATEGORY_POSITIVE)
    categories = ", ".join(f"{label}:{count}" for label, count in by_category.items())
    severities = ", ".join(f"{label}:{count}" for label, count in by_severity.items())
    return f"Tipos: {categories or 'ninguno'} | Gravedades: {severities or 'ninguna'}"


def build_incident_prompt(incident) -> str:
    return "\n".join(
        [
            "Analiza esta incidencia y responde BREVE y DIRECTA:",
            "",
            "RESUMEN:",
            "[1-2 líneas: qué pasó y por qué es importante]",
            "",
            "RECOMENDACIONES:",
            "[Máximo 2 acciones concretas, una por línea]",
            "",
            (
                f"Datos: Tipo: {_category_label(incident.category)} | Estudiante: {incident.student_name or 'N/A'}"
                f" | Profesor: {incident.teacher or 'N/A'} | Descripción: {incident.description or 'N/A'}"
                f" | Fecha: {incident.date or 'N/A'} | Gravedad: {_severity_label(incident)}"
                f" | Derivación: {incident.escalation or 'ninguna'}"
            ),
            "",
            "IMPORTANTE: Máximo 2 líneas por sección. Sin asteriscos ni markdown.",
        ]
    )


def build_student_prompt(student_label: str, incidents: Sequence) -> str:
    if not incidents:
        return "\n".join(
            [
                f"Genera un resumen breve (UNA LÍNEA) para el estudiante {student_label}:",
                "",
                "El estudiante no tiene incidencias recientes registradas. Genera un resumen positivo y conciso sobre su rendimiento normal.",
                "",
                "Formato: Solo una línea, sin encabezados, positivo y alentador.",
            ]
        )
    lines = [
        "Analiza las incidencias y genera un reporte CONCISO:",
        "",
        "RESUMEN:",
        "[2 líneas máximo: situación general del estudiante]",
        "",
        "ANÁLISIS DE PATRONES:",
        "[1-2 líneas: patrones identificados]",
        "",
        "FORTALEZAS Y ÁREAS DE MEJORA:",
        "[1-2 líneas: aspectos positivos y áreas a mejorar]",
        "",
        "FACTORES DE RIESGO:",
        "[1 línea: principales factores si existen]",
        "",
        "RECOMENDACIONES:",
        "[Máximo 3 recomendaciones breves, una por línea]",
        "",
        "PLAN DE SEGUIMIENTO:",
        "[Máximo 2 pasos específicos, uno por línea]",
        "",
        f"Estudiante: {student_label}",
        f"Total: {len(incidents)} | {_distribution(incidents)}",
        "",
        "Incidencias:",
    ]
    for idx, incident in enumerate(incidents, 1):
        description = (incident.description or "N/A")[:60]
        lines.append(f"Inc {idx}: {_category_label(incident.category)} - {_severity_label(incident)} - {description}")
    lines.append("")
    lines.append("IMPORTANTE: Máximo 2 líneas por sección. Sin asteriscos ni markdown. Lenguaje directo.")
    return "\n".join(lines)


def build_general_prompts(incidents: Sequence) -> dict[str, str]:
    """Three independent prompts so the sections of the general report never mix."""
    total = len(incidents)
    students = {incident.student_id or incident.student_name for incident in incidents}
    teachers = counts_by_teacher(incidents)
    severe = sum(1 for incident in incidents if effective_severity(incident) == SEVERITY_SEVERE)
    datos = (
        f"{total} incidencias totales | {_distribution(incidents)}"
        f" | Estudiantes únicos: {len(students)} | Profesores únicos: {len(teachers)}"
    )
    at_risk = frequent_students(incidents, threshold=5, limit=10)
    outliers = teacher_outliers(incidents)
    dominant = dominant_category(incidents)

    at_risk_text = ", ".join(f"{item['student']} ({item['count']})" for item in at_risk) or "Ninguno"
    outlier_text = ", ".join(f"{item['teacher']} ({item['count']})" for item in outliers) or "Ninguno"
    return {
        "resumen": "\n".join(
            [
                "Genera SOLO un resumen ejecutivo (2-3 líneas) sobre el análisis general del estado de incidencias, tendencias principales y situación institucional.",
                "",
                f"Datos: {datos}",
                "",
                "IMPORTANTE: Solo genera el resumen, sin títulos, sin alertas, sin recomendaciones. Solo texto descriptivo directo.",
            ]
        ),
        "alertas": "\n".join(
            [
                "Identifica y describe las alertas más importantes basándote en los datos.",
                "",
                "Datos específicos:",
                f"- Estudiantes con alto número de incidencias (5 o más): {at_risk_text}",
                f"- Profesores con reportes superiores al promedio: {outlier_text}",
                f"- Porcentaje de incidencias graves: {severe_share(incidents)}% ({severe} de {total})",
                f"- Tipo de incidencia predominante: {_category_label(dominant) if dominant else 'N/A'}",
                "",
                f"Datos generales: {datos}",
                "",
                "IMPORTANTE:",
                "- Si no hay alertas críticas, indica que el estado general es positivo y los indicadores están dentro de rangos normales",
                "- NO uses markdown, asteriscos, guiones, ni ningún formato especial",
                "- Describe cada alerta en una o dos líneas, de forma clara y concisa",
                "- Sin títulos, sin resumen, sin recomendaciones",
            ]
        ),
        "recomendaciones": "\n".join(
            [
                "Genera 3-4 recomendaciones breves y específicas basándote en los datos de incidencias.",
                "",
                f"Datos: {datos}",
                "",
                "IMPORTANTE:",
                "- Las incidencias positivas DEBEN INCREMENTARSE",
                "- Las incidencias de ausencia, conducta y académicas se deben PREVENIR o REDUCIR",
                "- Escribe UNA recomendación por línea, completa e independiente",
                "- NO uses números, guiones, asteriscos ni ningún marcador al inicio",
                "- Sin títulos, sin resumen, sin alertas",
            ]
        ),
    }


def _report_text(sections: dict[str, str]) -> str:
    headers = (
        ("resumen", "RESUMEN"),
        ("alertas", "ALERTAS INTELIGENTES"),
        ("analisis_patrones", "PATRONES"),
        ("fortalezas", "FORTALEZAS Y MEJORAS"),
        ("factores_riesgo", "FACTORES DE RIESGO"),
        ("recomendaciones", "RECOMENDACIONES"),
        ("plan_seguimiento", "PLAN DE SEGUIMIENTO"),
    )
    blocks = [f"{title}:\n{sections[key]}" for key, title in headers if sections.get(key)]
    return "\n\n".join(blocks)


def parse_sections(text: str) -> dict[str, str]:
    """Split a multi-section reply into its named sections, markdown removed."""
    following = "ANÁLISIS DE PATRONES|PATRONES|FORTALEZAS|RIESGOS|ALERTAS|RECOMENDACIONES|SEGUIMIENTO"
    sections = {
        "resumen": extract_section(text, "RESUMEN", following),
        "analisis_patrones": extract_section(text, "ANÁLISIS DE PATRONES", "FORTALEZAS|RIESGOS|ALERTAS|RECOMENDACIONES|SEGUIMIENTO")
        or extract_section(text, "PATRONES", "FORTALEZAS|RIESGOS|ALERTAS|RECOMENDACIONES|SEGUIMIENTO"),
        "fortalezas": extract_section(text, "FORTALEZAS Y ÁREAS DE MEJORA", "RIESGOS|FACTORES|ALERTAS|RECOMENDACIONES|SEGUIMIENTO")
        or extract_section(text, "FORTALEZAS Y MEJORAS", "RIESGOS|FACTORES|ALERTAS|RECOMENDACIONES|SEGUIMIENTO"),
        "factores_riesgo": extract_section(text, "FACTORES DE RIESGO", "ALERTAS|RECOMENDACIONES|SEGUIMIENTO")
        or extract_section(text, "RIESGOS", "ALERTAS|RECOMENDACIONES|SEGUIMIENTO"),
        "alertas": extract_section(text, "ALERTAS INTELIGENTES", "RECOMENDACIONES|SEGUIMIENTO")
        or extract_section(text, "ALERTAS", "RECOMENDACIONES|SEGUIMIENTO"),
        "recomendaciones": extract_section(text, "RECOMENDACIONES", "PLAN DE SEGUIMIENTO|SEGUIMIENTO"),
        "plan_seguimiento": extract_section(text, "PLAN DE SEGUIMIENTO") or extract_section(text, "SEGUIMIENTO"),
    }
    if not any(sections.values()) and text:
        sections["resumen"] = text.strip()
    if sections["resumen"] and not sections["recomendaciones"]:
        sections["recomendaciones"] = DEFAULT_RECOMMENDATION
    return {key: clean_markdown(value) for key, value in sections.items()}


def _unavailable(message: str) -> dict:
    return {
        "resumen": SUMMARY_UNAVAILABLE,
        "recomendaciones": RECOMMENDATIONS_UNAVAILABLE,
        "alertas": "",
        "raw": "",
        "report": "",
        "error": message,
        "generated_at": datetime.utcnow().isoformat() + "Z",
    }


def _empty_period() -> dict:
    sections = {"resumen": NO_INCIDENTS_SUMMARY, "alertas": "", "recomendaciones": ""}
    result = dict(sections)
    result["report"] = _report_text(sections)
    result["raw"] = ""
    result["generated_at"] = datetime.utcnow().isoformat() + "Z"
    return result


def _general_summary(incidents: Sequence, generate: GenerateFn) -> dict:
    prompts = build_general_prompts(incidents)
    budgets = {"resumen": 500, "alertas": 1000, "recomendaciones": 800}
    answers: dict[str, str] = {}
    failures = []
    for key, prompt in prompts.items():
        try:
            answers[key] = generate(prompt, budgets[key])
        except AICollaboratorError as exc:
            logger.warning("General report section %s unavailable: %s", key, exc)
            failures.append(key)
    if len(failures) == len(prompts):
        return _unavailable("all AI requests failed")
    sections = {
        "resumen": clean_markdown(answers.get("resumen")) or SUMMARY_UNAVAILABLE,
        "alertas": clean_markdown(answers.get("alertas")),
        "recomendaciones": split_run_on(clean_markdown(answers.get("recomendaciones"))) or RECOMMENDATIONS_UNAVAILABLE,
    }
    result = dict(sections)
    result["report"] = _report_text(sections)
    result["raw"] = "\n\n".join(
        f"{label}: {sections[key]}"
        for key, label in (("resumen", "Resumen"), ("alertas", "Alertas"), ("recomendaciones", "Recomendaciones"))
    )
    if failures:
        result["error"] = f"unavailable sections: {', '.join(failures)}"
    result["generated_at"] = datetime.utcnow().isoformat() + "Z"
    return result


def request_ai_summary(
    incident=None,
    incidents: Optional[Sequence] = None,
    student_label: Optional[str] = None,
    generate: Optional[GenerateFn] = None,
) -> dict:
    """Ask the AI collaborator for a narrative about one incident or a set of them.

    Collaborator failures never raise: the result then carries the "not
    available" placeholders and an ``error`` entry. Passing neither an
    incident nor a list of incidents is a ValidationError.
    """
    generate = generate or generate_text
    if incidents is not None and student_label:
        if student_label == GENERAL_REPORT_LABEL:
            if not incidents:
                return _empty_period()
            return _general_summary(incidents, generate)
        prompt = build_student_prompt(student_label, incidents)
        budget = 2500 if incidents else 200
    elif incident is not None:
        prompt = build_incident_prompt(incident)
        budget = 2000
    else:
        raise ValidationError("an incident or a list of incidents with a student label is required")

    try:
        text = generate(prompt, budget)
    except AICollaboratorError as exc:
        logger.warning("AI summary unavailable: %s", exc)
        return _unavailable(str(exc))

    if incidents is not None and not incidents:
        sections = {"resumen": clean_markdown(text), "recomendaciones": "", "alertas": ""}
    else:
        sections = parse_sections(text)
    result = dict(sections)
    result["report"] = _report_text(sections) or sections.get("resumen", "")
    result["raw"] = text
    result["generated_at"] = datetime.utcnow().isoformat() + "Z"
    return result
