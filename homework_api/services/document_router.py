from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from homework_api.errors import ClassificationError
from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import AgentId, ContentType, GradeLevel, RoutingDecision, Subject
from homework_api.schemas.homework import AnalysisPreferences, OCRFragment
from homework_api.services.agents.common import format_preference_hints, join_ocr_text
from homework_api.services.model_gateway import (
    GatewaySettings,
    RetryPolicy,
    build_image_part,
    build_text_part,
    invoke_model,
)

logger = get_logger(__name__)

ROUTER_PROMPT = """You are a homework classification expert. Analyze the homework image and OCR text and classify the content.

1. subject: the primary academic subject. One of:
   Math, Science-Physics, Science-Chemistry, Science-Biology, Language-English, Language-Spanish,
   Language-French, Language-German, History, Geography, Art, Music, PE, CS, Other

2. contentType:
   - "study_material": lesson explanations, theory or diagrams meant to be studied
   - "exercises": problems, questions or tasks the student has to solve or answer
   - "hybrid": both study material and exercises on the same page

3. gradeLevel: Elementary, MiddleSchool, HighSchool or University

4. confidence: a number between 0 and 1

Return ONLY a JSON object with the keys subject, contentType, gradeLevel and confidence."""

ROUTER_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "subject": {"type": "string", "enum": [item.value for item in Subject]},
        "contentType": {"type": "string", "enum": [item.value for item in ContentType]},
        "gradeLevel": {
            "type": "string",
            "enum": [item.value for item in GradeLevel if item is not GradeLevel.UNKNOWN],
        },
        "confidence": {"type": "number"},
    },
    "required": ["subject", "contentType", "gradeLevel", "confidence"],
}

# First match wins; specific languages and sciences come before the generic words.
SUBJECT_KEYWORDS: tuple[tuple[str, Subject], ...] = (
    ("math", Subject.MATH),
    ("algebra", Subject.MATH),
    ("geometry", Subject.MATH),
    ("calculus", Subject.MATH),
    ("arithmetic", Subject.MATH),
    ("statistic", Subject.MATH),
    ("computer", Subject.CS),
    ("programming", Subject.CS),
    ("informatics", Subject.CS),
    ("physics", Subject.SCIENCE_PHYSICS),
    ("chemistry", Subject.SCIENCE_CHEMISTRY),
    ("biology", Subject.SCIENCE_BIOLOGY),
    ("science", Subject.SCIENCE_PHYSICS),
    ("english", Subject.LANGUAGE_ENGLISH),
    ("spanish", Subject.LANGUAGE_SPANISH),
    ("español", Subject.LANGUAGE_SPANISH),
    ("french", Subject.LANGUAGE_FRENCH),
    ("français", Subject.LANGUAGE_FRENCH),
    ("german", Subject.LANGUAGE_GERMAN),
    ("deutsch", Subject.LANGUAGE_GERMAN),
    ("language", Subject.LANGUAGE_ENGLISH),
    ("grammar", Subject.LANGUAGE_ENGLISH),
    ("history", Subject.HISTORY),
    ("geograph", Subject.GEOGRAPHY),
    ("music", Subject.MUSIC),
    ("art", Subject.ART),
    ("physical education", Subject.PE),
    ("pe", Subject.PE),
    ("sport", Subject.PE),
    ("cs", Subject.CS),
)

AGENT_BY_SUBJECT: dict[Subject, AgentId] = {
    Subject.MATH: AgentId.MATH_EXERCISE,
    Subject.SCIENCE_PHYSICS: AgentId.SCIENCE_EXERCISE,
    Subject.SCIENCE_CHEMISTRY: AgentId.SCIENCE_EXERCISE,
    Subject.SCIENCE_BIOLOGY: AgentId.SCIENCE_EXERCISE,
    Subject.LANGUAGE_ENGLISH: AgentId.LANGUAGE_EXERCISE,
    Subject.LANGUAGE_SPANISH: AgentId.LANGUAGE_EXERCISE,
    Subject.LANGUAGE_FRENCH: AgentId.LANGUAGE_EXERCISE,
    Subject.LANGUAGE_GERMAN: AgentId.LANGUAGE_EXERCISE,
    Subject.HISTORY: AgentId.GENERIC_EXERCISE,
    Subject.GEOGRAPHY: AgentId.GENERIC_EXERCISE,
    Subject.ART: AgentId.GENERIC_EXERCISE,
    Subject.MUSIC: AgentId.GENERIC_EXERCISE,
    Subject.PE: AgentId.GENERIC_EXERCISE,
    Subject.CS: AgentId.GENERIC_EXERCISE,
    Subject.OTHER: AgentId.GENERIC_EXERCISE,
}

_KEYWORD_PATTERNS = tuple(
    (re.compile(rf"(?<![a-z]){re.escape(keyword)}", re.IGNORECASE), subject)
    for keyword, subject in SUBJECT_KEYWORDS
)
_SHORT_KEYWORDS = {"pe", "cs"}


@dataclass(frozen=True)
class RouterRun:
    decision: RoutingDecision
    model: str
    attempts: int


def classify(
    *,
    image_base64: str,
    mime_type: str,
    ocr_fragments: tuple[OCRFragment, ...],
    preferences: AnalysisPreferences | None,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> RouterRun:
    parts = [
        build_image_part(image_base64=image_base64, mime_type=mime_type),
        build_text_part(f"\n\nOCR Extracted Text:\n{join_ocr_text(ocr_fragments)}"),
    ]
    hints = format_preference_hints(preferences)
    if hints:
        parts.append(build_text_part(f"\n\n{hints}"))

    result = invoke_model(
        prompt=ROUTER_PROMPT,
        schema=ROUTER_RESPONSE_SCHEMA,
        parts=parts,
        settings=settings,
        policy=policy,
        temperature=0.2,
        max_output_tokens=1024,
        thinking_budget=0,
        client=client,
    )
    decision = build_routing_decision(result.data)
    logger.info(
        "routing: subject=%s contentType=%s gradeLevel=%s confidence=%.2f agent=%s",
        decision.subject.value,
        decision.content_type.value,
        decision.grade_level.value,
        decision.confidence,
        decision.agent_id.value,
    )
    return RouterRun(decision=decision, model=result.model, attempts=result.attempts)


def build_routing_decision(raw: object) -> RoutingDecision:
    if not isinstance(raw, dict):
        raise ClassificationError(f"Router returned {type(raw).__name__}, expected a JSON object")

    raw_subject = raw.get("subject")
    if not isinstance(raw_subject, str) or not raw_subject.strip():
        raise ClassificationError("Router response is missing the subject")

    subject = parse_subject(raw_subject)
    content_type = parse_content_type(raw.get("contentType"))
    return RoutingDecision(
        subject=subject,
        content_type=content_type,
        grade_level=parse_grade_level(raw.get("gradeLevel")),
        confidence=parse_confidence(raw.get("confidence")),
        agent_id=select_agent(subject, content_type),
        raw_subject=raw_subject.strip(),
    )


def select_agent(subject: Subject, content_type: ContentType) -> AgentId:
    if content_type is ContentType.STUDY_MATERIAL:
        return AgentId.STUDY_MATERIAL
    return AGENT_BY_SUBJECT.get(subject, AgentId.GENERIC_EXERCISE)


def parse_subject(value: str) -> Subject:
    cleaned = value.strip()
    for subject in Subject:
        if subject.value.lower() == cleaned.lower():
            return subject

    for pattern, subject in _KEYWORD_PATTERNS:
        match = pattern.search(cleaned)
        if not match:
            continue
        keyword = match.group(0).lower()
        if keyword in _SHORT_KEYWORDS and not _is_whole_word(cleaned, match):
            continue
        return subject

    logger.warning("routing: unrecognized subject %r, using %s", value, Subject.OTHER.value)
    return Subject.OTHER


def parse_content_type(value: object) -> ContentType:
    if isinstance(value, str):
        key = re.sub(r"[\s\-]+", "_", value.strip().lower())
        if key == "exercise":
            key = ContentType.EXERCISES.value
        try:
            return ContentType(key)
        except ValueError:
            pass
    return ContentType.EXERCISES


def parse_grade_level(value: object) -> GradeLevel:
    if isinstance(value, str):
        key = re.sub(r"[\s_\-]+", "", value).lower()
        for grade_level in GradeLevel:
            if grade_level.value.lower() == key:
                return grade_level
    return GradeLevel.UNKNOWN


def parse_confidence(value: object) -> float:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return 0.0
    if not parsed.is_finite():
        return 0.0
    if Decimal("1") < parsed <= Decimal("100"):
        parsed = parsed / Decimal("100")
    parsed = max(Decimal("0"), min(Decimal("1"), parsed))
    return float(parsed)


def _is_whole_word(text: str, match: re.Match) -> bool:
    end = match.end()
    return end == len(text) or not text[end].isalpha()
