"""Study-material agent: lesson summary plus optional generated practice."""

from __future__ import annotations

import httpx

from homework_api.errors import AgentError
from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import (
    AgentId,
    HighlightedElement,
    KeyPoint,
    StudyMaterialPayload,
    StudyMaterialSummary,
    Subject,
    WorkedExample,
)
from homework_api.schemas.exercises import Exercise, InputType, Position, StudyDetails
from homework_api.services.agents.common import (
    POSITION_SCHEMA,
    AgentContext,
    build_input_config,
    collect_exercises,
    exercise_item_schema,
    invoke_agent_model,
    optional_string_tuple,
    optional_text,
    parse_difficulty,
    parse_input_type,
    parse_minutes,
    position_from_raw,
    require_object,
    string_tuple,
)
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

logger = get_logger(__name__)

AGENT_ID = AgentId.STUDY_MATERIAL

STUDY_MATERIAL_PROMPT = """You are a study material analysis agent. The page contains lessons, theory, definitions or worked examples (NOT exercises to be solved).

1. summary:
   - title of the lesson and mainTopics
   - keyPoints, each with importance high, medium or low and its position on the page
   - highlightedElements: definitions, theorems, formulas and examples, with latexContent for mathematical content
   - position: the part of the page that holds the lesson
2. workedExamples: problems already solved on the page, with problemStatement, problemLatex, topic, the solutionSteps shown and position.
3. practiceExercises: {practice_instruction}
   Each has exerciseNumber, questionText, questionLatex, topic, difficulty (easy, medium, hard), estimatedTimeMinutes, inputType, inputConfig, relatedConcepts and hints.

Positions use startY and endY between 0.0 (top) and 1.0 (bottom), taken from the OCR block Y coordinates.

Return ONLY a JSON object: {"summary": {...}, "workedExamples": [...], "practiceExercises": [...]}"""

_PRACTICE_ON = "create 3-5 NEW practice exercises similar to the material, with varied difficulty (easier, same level, harder)."
_PRACTICE_OFF = "return an empty list; the student asked for no extra practice."

_SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "mainTopics": {"type": "array", "items": {"type": "string"}},
        "keyPoints": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "point": {"type": "string"},
                    "importance": {"type": "string", "enum": ["high", "medium", "low"]},
                    "position": POSITION_SCHEMA,
                },
                "required": ["point"],
            },
        },
        "highlightedElements": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["definition", "theorem", "formula", "example"]},
                    "content": {"type": "string"},
                    "latexContent": {"type": "string"},
                    "position": POSITION_SCHEMA,
                },
                "required": ["type", "content"],
            },
        },
        "position": POSITION_SCHEMA,
    },
    "required": ["title"],
}

STUDY_MATERIAL_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": _SUMMARY_SCHEMA,
        "workedExamples": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "exampleNumber": {"type": "string"},
                    "problemStatement": {"type": "string"},
                    "problemLatex": {"type": "string"},
                    "topic": {"type": "string"},
                    "solutionSteps": {"type": "array", "items": {"type": "string"}},
                    "position": POSITION_SCHEMA,
                },
                "required": ["problemStatement"],
            },
        },
        "practiceExercises": {
            "type": "array",
            "items": exercise_item_schema(extra_properties={"hints": {"type": "array", "items": {"type": "string"}}}),
        },
    },
    "required": ["summary"],
}

_IMPORTANCE_TIERS = {"high", "medium", "low"}
_HIGHLIGHT_TYPES = {"definition", "theorem", "formula", "example"}
_CANVAS_SUBJECTS = {
    Subject.MATH,
    Subject.SCIENCE_PHYSICS,
    Subject.SCIENCE_CHEMISTRY,
    Subject.SCIENCE_BIOLOGY,
}


def extract_study_material(
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> StudyMaterialPayload:
    include_practice = practice_requested(context)
    prompt = STUDY_MATERIAL_PROMPT.replace(
        "{practice_instruction}",
        _PRACTICE_ON if include_practice else _PRACTICE_OFF,
    )
    result = invoke_agent_model(
        context,
        agent_id=AGENT_ID,
        prompt=prompt,
        schema=STUDY_MATERIAL_RESPONSE_SCHEMA,
        settings=settings,
        policy=policy,
        temperature=0.3,
        client=client,
    )
    data = require_object(result.data, agent_id=AGENT_ID)
    raw_summary = data.get("summary")
    if not isinstance(raw_summary, dict):
        raise AgentError("response is missing the lesson summary", agent_id=AGENT_ID.value)

    summary = build_summary(raw_summary, worked_examples=data.get("workedExamples"), subject=context.routing.subject)
    practice_position = summary.position or Position(start_y=0.0, end_y=1.0)

    raw_practice = data.get("practiceExercises")
    raw_practice = raw_practice if isinstance(raw_practice, list) else []
    if not include_practice and raw_practice:
        logger.info("%s: dropping %d practice exercises (extra practice disabled)", AGENT_ID.value, len(raw_practice))
        raw_practice = []

    default_input_type = InputType.MATH_CANVAS if context.routing.subject in _CANVAS_SUBJECTS else InputType.TEXT_AREA

    def build(item: dict, *, number: str, question_text: str, position: Position) -> Exercise:
        return _build_practice_exercise(
            item,
            number=number,
            question_text=question_text,
            position=position,
            default_input_type=default_input_type,
        )

    batch = collect_exercises(
        raw_practice,
        agent_id=AGENT_ID,
        fragments=context.ocr_fragments,
        build_exercise=build,
        numbers=[f"P{index}" for index in range(1, len(raw_practice) + 1)],
        fixed_position=practice_position,
    )
    return StudyMaterialPayload(
        agent_id=AGENT_ID,
        model=result.model,
        attempts=result.attempts,
        exercises=tuple(batch.exercises),
        excluded=tuple(batch.excluded),
        warnings=tuple(batch.warnings),
        source_indices=tuple(batch.source_indices),
        summary=summary,
    )


def practice_requested(context: AgentContext) -> bool:
    preferences = context.preferences
    if preferences is None or preferences.include_extra_practice is None:
        return True
    return preferences.include_extra_practice


def build_summary(raw: dict, *, worked_examples: object, subject: Subject) -> StudyMaterialSummary:
    main_topics = string_tuple(raw.get("mainTopics"))
    title = optional_text(raw.get("title")) or (main_topics[0] if main_topics else f"{subject.value} lesson")

    key_points: list[KeyPoint] = []
    for item in _as_list(raw.get("keyPoints")):
        if isinstance(item, str):
            item = {"point": item}
        if not isinstance(item, dict) or not optional_text(item.get("point")):
            continue
        importance = str(item.get("importance") or "medium").strip().lower()
        key_points.append(
            KeyPoint(
                point=optional_text(item.get("point")),
                importance=importance if importance in _IMPORTANCE_TIERS else "medium",
                position=position_from_raw(item.get("position")),
            )
        )

    highlighted: list[HighlightedElement] = []
    for item in _as_list(raw.get("highlightedElements")):
        if not isinstance(item, dict):
            continue
        element_type = str(item.get("type") or "").strip().lower()
        content = optional_text(item.get("content"))
        if element_type not in _HIGHLIGHT_TYPES or not content:
            continue
        highlighted.append(
            HighlightedElement(
                type=element_type,
                content=content,
                latex_content=optional_text(item.get("latexContent")),
                position=position_from_raw(item.get("position")),
            )
        )
    # Older responses list formulas separately as {name, latex, description}.
    for item in _as_list(raw.get("formulas")):
        if not isinstance(item, dict):
            continue
        content = optional_text(item.get("name")) or optional_text(item.get("description"))
        latex = optional_text(item.get("latex"))
        if content or latex:
            highlighted.append(HighlightedElement(type="formula", content=content or latex, latex_content=latex))

    return StudyMaterialSummary(
        title=title,
        main_topics=main_topics,
        key_points=tuple(key_points),
        highlighted_elements=tuple(highlighted),
        worked_examples=tuple(_build_worked_examples(worked_examples)),
        position=position_from_raw(raw.get("position")),
    )


def _as_list(value: object) -> list:
    return value if isinstance(value, list) else []


def _build_worked_examples(raw: object) -> list[WorkedExample]:
    if not isinstance(raw, list):
        return []
    examples: list[WorkedExample] = []
    for index, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            continue
        statement = optional_text(item.get("problemStatement")) or optional_text(item.get("questionText"))
        if not statement:
            continue
        examples.append(
            WorkedExample(
                number=optional_text(item.get("exampleNumber")) or str(index),
                problem_statement=statement,
                problem_latex=optional_text(item.get("problemLatex")),
                topic=optional_text(item.get("topic")) or "",
                solution_steps=string_tuple(item.get("solutionSteps")),
                position=position_from_raw(item.get("position")),
            )
        )
    return examples


def _build_practice_exercise(
    item: dict,
    *,
    number: str,
    question_text: str,
    position: Position,
    default_input_type: InputType,
) -> Exercise:
    input_type = parse_input_type(item.get("inputType"), default=default_input_type)
    return Exercise(
        number=number,
        question_text=question_text,
        question_latex=optional_text(item.get("questionLatex")),
        topic=optional_text(item.get("topic")) or "",
        difficulty=parse_difficulty(item.get("difficulty")),
        estimated_minutes=parse_minutes(item.get("estimatedTimeMinutes")),
        input_type=input_type,
        input_config=build_input_config(input_type, item.get("inputConfig"), question_text=question_text),
        position=position,
        related_concepts=optional_string_tuple(item.get("relatedConcepts")),
        solution_steps=optional_string_tuple(item.get("solutionSteps")),
        subject_specific=StudyDetails(source="practice", hints=string_tuple(item.get("hints"))),
    )
