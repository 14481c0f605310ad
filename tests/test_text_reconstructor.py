from text_reconstructor import (
    REPORT_HEADER_RE,
    clean_markdown,
    extract_section,
    split_into_items,
    split_run_on,
)


def test_numbered_recommendations_with_header():
    raw = "RECOMENDACIONES:\n1. Hablar con el tutor.\n2. Seguimiento semanal."
    assert split_into_items(raw) == ["Hablar con el tutor.", "Seguimiento semanal."]


def test_empty_input():
    assert split_into_items("") == []
    assert split_into_items("   \n  ") == []
    assert split_into_items(None) == []


def test_bullets_and_continuation_lines():
    raw = "- reunión con la familia\n  para revisar el plan\n• Refuerzo en matemáticas"
    assert split_into_items(raw) == [
        "Reunión con la familia para revisar el plan",
        "Refuerzo en matemáticas",
    ]


def test_uppercase_line_starts_item_only_after_period():
    raw = "Mantener el seguimiento\nSemanal con el tutor.\nCoordinar con orientación."
    assert split_into_items(raw) == [
        "Mantener el seguimiento Semanal con el tutor.",
        "Coordinar con orientación.",
    ]


def test_clean_sentences_split_like_newlines():
    items = ["Hablar con la familia.", "Revisar la asistencia.", "Reconocer los avances."]
    assert split_into_items("\n".join(items)) == items


def test_round_trip_modulo_capitalisation():
    items = ["hablar con la familia.", "Revisar la asistencia."]
    assert split_into_items("\n".join(items)) == ["Hablar con la familia.", "Revisar la asistencia."]


def test_never_drops_text():
    assert split_into_items("RESUMEN: el estudiante mejora") == ["El estudiante mejora"]


def test_report_header_pattern():
    raw = "ALERTAS INTELIGENTES:\n1. Aumento de ausencias en 5B."
    assert split_into_items(raw, REPORT_HEADER_RE) == ["Aumento de ausencias en 5B."]
    # the default pattern leaves unknown headers in place
    assert split_into_items(raw)[0] == "ALERTAS INTELIGENTES:"


def test_clean_markdown():
    assert clean_markdown("## **Resumen** con *énfasis* y __subrayado__") == "Resumen con énfasis y subrayado"
    assert clean_markdown(None) == ""


def test_extract_section():
    text = "RESUMEN:\nTodo bien.\n\nRECOMENDACIONES:\n1. Seguir así.\nPLAN DE SEGUIMIENTO:\nRevisar en un mes."
    assert extract_section(text, "RESUMEN", "RECOMENDACIONES") == "Todo bien."
    assert extract_section(text, "RECOMENDACIONES", "PLAN DE SEGUIMIENTO|SEGUIMIENTO") == "1. Seguir así."
    assert extract_section(text, "PLAN DE SEGUIMIENTO") == "Revisar en un mes."
    assert extract_section(text, "ALERTAS") == ""


def test_split_run_on():
    assert split_run_on("Hablar con la familia. Revisar la asistencia.") == (
        "Hablar con la familia.\nRevisar la asistencia."
    )
    assert split_run_on("ya\nseparado") == "ya\nseparado"
