"""Turn free-form AI replies into ordered lists of items.

The model is asked for one recommendation per line but often answers with
numbered lists, bullets, or plain prose. :func:`split_into_items` accepts all
three and never drops text.
"""
from __future__ import annotations

import re
from typing import Optional, Pattern

SUMMARY_HEADER_RE = re.compile(r"^(RESUMEN|RECOMENDACIONES):?\s*", re.IGNORECASE)
REPORT_HEADER_RE = re.compile(
    r"^(RESUMEN|RECOMENDACIONES|ALERTAS(?: INTELIGENTES)?|PLAN DE SEGUIMIENTO|SEGUIMIENTO):?\s*",
    re.IGNORECASE,
)

NUMBERED_RE = re.compile(r"^\d+[.)-]\s*")
BULLET_RE = re.compile(r"^[-•*]\s*")

NO_TEXT_PLACEHOLDER = "No text available"


def _capitalize(item: str) -> str:
    return item[:1].upper() + item[1:]


def split_into_items(raw: Optional[str], header_pattern: Pattern = SUMMARY_HEADER_RE) -> list[str]:
    """Split ``raw`` into items, one per recommendation or sentence group.

    A leading header matching ``header_pattern`` is removed. Numbered and
    bulleted lines always start a new item (the marker is dropped). An
    unmarked line that begins with an uppercase letter starts a new item only
    when the open item already ends with a period; every other line continues
    the open item.
    """
    text = (raw or "").strip()
    if not text:
        return []
    text = header_pattern.sub("", text, count=1).strip()
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]

    items: list[str] = []
    current: Optional[str] = None
    for line in lines:
        marker = NUMBERED_RE.match(line) or BULLET_RE.match(line)
        if marker:
            if current:
                items.append(current)
            current = line[marker.end():].strip()
            continue
        if current is None:
            current = line
            continue
        if line[0].isupper() and current.endswith("."):
            items.append(current)
            current = line
            continue
        current = f"{current} {line}" if current else line
    if current:
        items.append(current)

    if not items and text:
        items = [text]
    return [_capitalize(item) for item in items]


_MARKDOWN_PATTERNS = (
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"_([^_]+)_"), r"\1"),
    (re.compile(r"^#+\s*", re.MULTILINE), ""),
)


def clean_markdown(text: Optional[str]) -> str:
    if not text:
        return ""
    for pattern, replacement in _MARKDOWN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text.strip()


def extract_section(text: str, name: str, next_names: Optional[str] = None) -> str:
    """Return the body of section ``name`` up to the first of ``next_names``.

    ``next_names`` is a ``|`` separated alternation, e.g.
    ``"RECOMENDACIONES|SEGUIMIENTO"``. Missing sections give an empty string.
    """
    match = re.search(rf"(?:\*\*)?{name}:?\s*\*?\*?", text or "", re.IGNORECASE)
    if not match:
        return ""
    remaining = text[match.end():].strip()
    if next_names:
        following = re.search(rf"(?:\*\*)?(?:{next_names}):?\s*\*?\*?", remaining, re.IGNORECASE)
        if following:
            return remaining[:following.start()].strip()
    return remaining


def split_run_on(text: str) -> str:
    """Put one-line recommendation lists back on separate lines."""
    if not text or "\n" in text:
        return text
    text = re.sub(r"(\d+[.)]\s*)", r"\n\1", text)
    text = re.sub(r"\s([-•]\s+)", r"\n\1", text)
    text = re.sub(r"\.\s+([A-ZÁÉÍÓÚÑ])", r".\n\1", text)
    return text.strip()
