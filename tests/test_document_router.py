import json

import httpx
import pytest

from homework_api.errors import ClassificationError
from homework_api.schemas.analysis import AgentId, ContentType, GradeLevel, Subject
from homework_api.schemas.homework import OCRFragment
from homework_api.services.document_router import (
    AGENT_BY_SUBJECT,
    build_routing_decision,
    classify,
    parse_confidence,
    parse_content_type,
    parse_grade_level,
    parse_subject,
    select_agent,
)
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy


def test_agent_table_covers_every_subject():
    assert set(AGENT_BY_SUBJECT) == set(Subject)


@pytest.mark.parametrize(
    ("subject", "agent_id"),
    [
        (Subject.MATH, AgentId.MATH_EXERCISE),
        (Subject.SCIENCE_PHYSICS, AgentId.SCIENCE_EXERCISE),
        (Subject.SCIENCE_CHEMISTRY, AgentId.SCIENCE_EXERCISE),
        (Subject.SCIENCE_BIOLOGY, AgentId.SCIENCE_EXERCISE),
        (Subject.LANGUAGE_ENGLISH, AgentId.LANGUAGE_EXERCISE),
        (Subject.LANGUAGE_SPANISH, AgentId.LANGUAGE_EXERCISE),
        (Subject.LANGUAGE_FRENCH, AgentId.LANGUAGE_EXERCISE),
        (Subject.LANGUAGE_GERMAN, AgentId.LANGUAGE_EXERCISE),
        (Subject.HISTORY, AgentId.GENERIC_EXERCISE),
        (Subject.GEOGRAPHY, AgentId.GENERIC_EXERCISE),
        (Subject.ART, AgentId.GENERIC_EXERCISE),
        (Subject.MUSIC, AgentId.GENERIC_EXERCISE),
        (Subject.PE, AgentId.GENERIC_EXERCISE),
        (Subject.CS, AgentId.GENERIC_EXERCISE),
        (Subject.OTHER, AgentId.GENERIC_EXERCISE),
    ],
)
def test_select_agent_for_exercises_and_hybrid_pages(subject, agent_id):
    assert select_agent(subject, ContentType.EXERCISES) is agent_id
    assert select_agent(subject, ContentType.HYBRID) is agent_id


@pytest.mark.parametrize("subject", list(Subject))
def test_study_material_always_goes_to_study_agent(subject):
    assert select_agent(subject, ContentType.STUDY_MATERIAL) is AgentId.STUDY_MATERIAL


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Math", Subject.MATH),
        ("science-chemistry", Subject.SCIENCE_CHEMISTRY),
        ("Algebra II", Subject.MATH),
        ("Computer Science", Subject.CS),
        ("Physics", Subject.SCIENCE_PHYSICS),
        ("General Science", Subject.SCIENCE_PHYSICS),
        ("Français", Subject.LANGUAGE_FRENCH),
        ("English grammar", Subject.LANGUAGE_ENGLISH),
        ("World Geography", Subject.GEOGRAPHY),
        ("PE", Subject.PE),
        ("Physical Education", Subject.PE),
        ("Astrology", Subject.OTHER),
        ("Pedagogy", Subject.OTHER),
    ],
)
def test_parse_subject(raw, expected):
    assert parse_subject(raw) is expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("study material", ContentType.STUDY_MATERIAL),
        ("Hybrid", ContentType.HYBRID),
        ("exercise", ContentType.EXERCISES),
        ("worksheet", ContentType.EXERCISES),
        (None, ContentType.EXERCISES),
    ],
)
def test_parse_content_type(raw, expected):
    assert parse_content_type(raw) is expected


def test_parse_grade_level_tolerates_spacing_and_unknown_values():
    assert parse_grade_level("High School") is GradeLevel.HIGH_SCHOOL
    assert parse_grade_level("middle_school") is GradeLevel.MIDDLE_SCHOOL
    assert parse_grade_level("kindergarten") is GradeLevel.UNKNOWN
    assert parse_grade_level(None) is GradeLevel.UNKNOWN


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(0.82, 0.82), ("0.5", 0.5), (85, 0.85), (150, 1.0), (-3, 0.0), ("high", 0.0), (None, 0.0), ("NaN", 0.0)],
)
def test_parse_confidence(raw, expected):
    assert parse_confidence(raw) == pytest.approx(expected)


def test_build_routing_decision_rejects_non_object_and_missing_subject():
    with pytest.raises(ClassificationError):
        build_routing_decision(["Math"])
    with pytest.raises(ClassificationError, match="subject"):
        build_routing_decision({"contentType": "exercises"})


def test_build_routing_decision_fills_defaults():
    decision = build_routing_decision({"subject": "History"})

    assert decision.subject is Subject.HISTORY
    assert decision.content_type is ContentType.EXERCISES
    assert decision.grade_level is GradeLevel.UNKNOWN
    assert decision.confidence == 0.0
    assert decision.agent_id is AgentId.GENERIC_EXERCISE
    assert decision.raw_subject == "History"


def test_classify_sends_ocr_text_and_disables_thinking():
    captured: dict = {}

    class _FakeClient:
        def post(self, url: str, headers: dict, json: dict, timeout: float | None = None) -> httpx.Response:
            del headers, timeout
            captured["payload"] = json
            return _gemini_response(
                url,
                {"subject": "Science-Biology", "contentType": "exercises", "gradeLevel": "HighSchool", "confidence": 0.9},
            )

    run = classify(
        image_base64="aGVsbG8=",
        mime_type="image/jpeg",
        ocr_fragments=(OCRFragment(text="Label the parts of the cell", start_y=0.1, end_y=0.2),),
        preferences=None,
        settings=GatewaySettings(api_key="k", base_url="https://example.test/v1beta", model="gemini-2.5-flash"),
        policy=RetryPolicy(max_retries=1),
        client=_FakeClient(),
    )

    assert run.decision.agent_id is AgentId.SCIENCE_EXERCISE
    assert run.decision.grade_level is GradeLevel.HIGH_SCHOOL
    assert run.attempts == 1
    assert run.model == "gemini-2.5-flash"
    parts = captured["payload"]["contents"][0]["parts"]
    assert "Label the parts of the cell" in parts[2]["text"]
    config = captured["payload"]["generationConfig"]
    assert config["thinkingConfig"] == {"thinkingBudget": 0}
    assert config["maxOutputTokens"] == 1024


def _gemini_response(url: str, data: dict) -> httpx.Response:
    body = {"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": json.dumps(data)}]}}]}
    return httpx.Response(status_code=200, request=httpx.Request("POST", url), content=json.dumps(body).encode())
