from scoring import (
    ScoringWeights,
    performance_band,
    performance_index,
    rank_at_risk,
    rank_standouts,
    score,
)


def test_empty_score():
    result = score([])
    assert (result.points, result.positives, result.negatives) == (0, 0, 0)


def test_moderate_and_two_severe(make_incident):
    incidents = [
        make_incident(severity="moderate"),
        make_incident(severity="severe"),
        make_incident(severity="severe"),
    ]
    result = score(incidents)
    assert result.points == -15
    assert result.negatives == 3
    assert result.by_severity == {"mild": 0, "moderate": 1, "severe": 2}


def test_two_positives_is_standout_only(make_incident):
    incidents = [
        make_incident(student_name="Sofía Gómez", category="positive", severity=None),
        make_incident(student_name="Sofía Gómez", category="positive", severity=None),
    ]
    assert score(incidents).points == 10
    standouts = rank_standouts(incidents)
    assert [item.student_name for item in standouts] == ["Sofía Gómez"]
    assert rank_at_risk(incidents) == []


def test_three_severe_is_at_risk_only(make_incident):
    incidents = [make_incident(student_name="Luis Pérez", severity="severe") for _ in range(3)]
    at_risk = rank_at_risk(incidents)
    assert [(item.student_name, item.points) for item in at_risk] == [("Luis Pérez", -18)]
    assert rank_standouts(incidents) == []


def test_standout_needs_a_positive_and_a_positive_balance(make_incident):
    incidents = [
        make_incident(student_name="Ana Torres", category="positive", severity=None),
        make_incident(student_name="Ana Torres", severity="severe"),
    ]
    assert rank_standouts(incidents) == []


def test_standout_tie_breaks(make_incident):
    incidents = []
    # Marta: 3 positives, 2 mild -> 13
    incidents += [make_incident(student_name="Marta Díaz", category="positive", severity=None) for _ in range(3)]
    incidents += [make_incident(student_name="Marta Díaz", severity="mild") for _ in range(2)]
    # Pablo: 3 positives, 1 moderate -> 12
    incidents += [make_incident(student_name="Pablo Ruiz", category="positive", severity=None) for _ in range(3)]
    incidents.append(make_incident(student_name="Pablo Ruiz", severity="moderate"))
    # Nico: 3 positives, 1 severe -> 9
    incidents += [make_incident(student_name="Nico Sanz", category="positive", severity=None) for _ in range(3)]
    incidents.append(make_incident(student_name="Nico Sanz", severity="severe"))
    # Iris: 2 positives -> 10, fewer positives than Pablo but outranks Nico on points
    incidents += [make_incident(student_name="Iris León", category="positive", severity=None) for _ in range(2)]
    names = [item.student_name for item in rank_standouts(incidents)]
    assert names == ["Marta Díaz", "Pablo Ruiz", "Iris León", "Nico Sanz"]


def test_standout_equal_points_prefers_fewer_severe(make_incident):
    incidents = []
    # both 4 positives; Rosa has one severe (14), Tomás six mild (14)
    incidents += [make_incident(student_name="Rosa Gil", category="positive", severity=None) for _ in range(4)]
    incidents.append(make_incident(student_name="Rosa Gil", severity="severe"))
    incidents += [make_incident(student_name="Tomás Vidal", category="positive", severity=None) for _ in range(4)]
    incidents += [make_incident(student_name="Tomás Vidal", severity="mild") for _ in range(6)]
    names = [item.student_name for item in rank_standouts(incidents)]
    assert names == ["Tomás Vidal", "Rosa Gil"]


def test_standouts_capped_at_limit(make_incident):
    incidents = [
        make_incident(student_name=f"Alumno {chr(65 + i)}", category="positive", severity=None)
        for i in range(12)
    ]
    assert len(rank_standouts(incidents)) == 10
    assert len(rank_standouts(incidents, limit=3)) == 3


def test_at_risk_sorted_by_severe_count_and_uncapped(make_incident):
    incidents = []
    for i in range(12):
        name = f"Alumno {chr(65 + i)}"
        incidents += [make_incident(student_name=name, severity="severe") for _ in range(3 + (i % 3))]
    at_risk = rank_at_risk(incidents)
    assert len(at_risk) == 12
    counts = [item.severe for item in at_risk]
    assert counts == sorted(counts, reverse=True)


def test_custom_weights(make_incident):
    weights = ScoringWeights(positive=10, mild=-2, moderate=-4, severe=-8)
    incidents = [make_incident(category="positive", severity=None), make_incident(severity="mild")]
    assert score(incidents, weights).points == 8


def test_performance_index_is_clamped_and_banded():
    assert performance_index(0, 0, 0) == 50
    assert performance_index(5, 0, 0) == 100
    assert performance_index(0, 4, 4) == 0
    assert performance_index(1, 1, 0) == 60
    assert performance_band(70) == "Excellent"
    assert performance_band(50) == "Good"
    assert performance_band(30) == "Fair"
    assert performance_band(29) == "Needs attention"
