from __future__ import annotations

import httpx

from homework_api.schemas.analysis import AgentId, OverallMetadata, SciencePayload, Subject
from homework_api.schemas.exercises import Exercise, InputType, Position, ScienceDetails, ScientificData
from homework_api.services.agents.common import (
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
    require_list,
    require_object,
    string_tuple,
)
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

AGENT_ID = AgentId.SCIENCE_EXERCISE

SCIENCE_EXERCISE_PROMPT = """You are a science exercise analysis agent for Physics, Chemistry and Biology homework. Extract ALL individual exercises on the page.

For each exercise:
1. exerciseNumber, questionText (complete), questionLatex (formulas and units in LaTeX), topic, scienceBranch (Physics, Chemistry or Biology), difficulty (easy, medium, hard), estimatedTimeMinutes.
2. inputType, the UI component the student answers with:
   - "math_canvas": calculations, equations, numerical problems with units
   - "drawing_canvas": circuit, free body, ray, molecule, cell or apparatus diagrams
   - "text_area": "Explain why", "Describe the process", "Compare and contrast"
   - "text_input": a single word, a name, a short definition
   - "inline": blanks inside formulas or sentences, e.g. "F = m x ___"
   - "multiple_choice": options listed as A) B) C) D)
3. inputConfig: options for multiple_choice, expectedUnits and requiresGrid for math_canvas, diagramType for drawing_canvas, minWords/maxWords for text_area.
4. scientificData: formulasNeeded, constants and safetyNotes relevant to the exercise.
5. position: startY and endY between 0.0 (top) and 1.0 (bottom) from the OCR block Y coordinates.
6. relatedConcepts and 3-5 solutionSteps that hint at the approach without giving the answer.

Also return the overall scienceBranch and overallMetadata (topics, estimatedTotalTime, difficultyDistribution, requiresLabEquipment).

Return ONLY a JSON object: {"scienceBranch": "...", "exercises": [...], "overallMetadata": {...}}"""

_SCIENTIFIC_DATA_SCHEMA = {
    "type": "object",
    "properties": {
        "formulasNeeded": {"type": "array", "items": {"type": "string"}},
        "constants": {"type": "array", "items": {"type": "string"}},
        "safetyNotes": {"type": "array", "items": {"type": "string"}},
    },
}

OVERALL_METADATA_SCHEMA = {
    "type": "object",
    "properties": {
        "topics": {"type": "array", "items": {"type": "string"}},
        "estimatedTotalTime": {"type": "integer"},
        "difficultyDistribution": {
            "type": "object",
            "properties": {
                "easy": {"type": "integer"},
                "medium": {"type": "integer"},
                "hard": {"type": "integer"},
            },
        },
        "requiresLabEquipment": {"type": "boolean"},
    },
}

SCIENCE_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "scienceBranch": {"type": "string", "enum": ["Physics", "Chemistry", "Biology", "General"]},
        "exercises": {
            "type": "array",
            "items": exercise_item_schema(
                extra_properties={
                    "scienceBranch": {"type": "string"},
                    "scientificData": _SCIENTIFIC_DATA_SCHEMA,
                },
                required=("position",),
            ),
        },
        "overallMetadata": OVERALL_METADATA_SCHEMA,
    },
    "required": ["exercises"],
}

_BRANCH_BY_SUBJECT = {
    Subject.SCIENCE_PHYSICS: "Physics",
    Subject.SCIENCE_CHEMISTRY: "Chemistry",
    Subject.SCIENCE_BIOLOGY: "Biology",
}


def extract_science_exercises(
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> SciencePayload:
    result = invoke_agent_model(
        context,
        agent_id=AGENT_ID,
        prompt=SCIENCE_EXERCISE_PROMPT,
        schema=SCIENCE_RESPONSE_SCHEMA,
        settings=settings,
        policy=policy,
        temperature=0.3,
        client=client,
    )
    data = require_object(result.data, agent_id=AGENT_ID)
    branch = optional_text(data.get("scienceBranch")) or _BRANCH_BY_SUBJECT.get(context.routing.subject)

    def build(item: dict, *, number: str, question_text: str, position: Position) -> Exercise:
        return _build_science_exercise(
            item,
            number=number,
            question_text=question_text,
            position=position,
            default_branch=branch,
        )

    batch = collect_exercises(
        require_list(data, "exercises", agent_id=AGENT_ID),
        agent_id=AGENT_ID,
        fragments=context.ocr_fragments,
        build_exercise=build,
    )
    return SciencePayload(
        agent_id=AGENT_ID,
        model=result.model,
        attempts=result.attempts,
        exercises=tuple(batch.exercises),
        excluded=tuple(batch.excluded),
        warnings=tuple(batch.warnings),
        source_indices=tuple(batch.source_indices),
        science_branch=branch,
        overall=build_overall_metadata(data.get("overallMetadata")),
    )


def build_overall_metadata(raw: object) -> OverallMetadata | None:
    if not isinstance(raw, dict):
        return None
    distribution_raw = raw.get("difficultyDistribution")
    distribution: dict[str, int] = {}
    if isinstance(distribution_raw, dict):
        for key, value in distribution_raw.items():
            count = parse_minutes(value)
            if count is not None:
                distribution[str(key)] = count
    requires_lab = raw.get("requiresLabEquipment")
    return OverallMetadata(
        topics=string_tuple(raw.get("topics")),
        estimated_total_minutes=parse_minutes(raw.get("estimatedTotalTime")),
        difficulty_distribution=distribution,
        requires_lab_equipment=requires_lab if isinstance(requires_lab, bool) else None,
        exercise_types=string_tuple(raw.get("exerciseTypes")),
    )


def _build_science_exercise(
    item: dict,
    *,
    number: str,
    question_text: str,
    position: Position,
    default_branch: str | None,
) -> Exercise:
    input_type = parse_input_type(item.get("inputType"), default=InputType.MATH_CANVAS)
    raw_data = item.get("scientificData")
    raw_data = raw_data if isinstance(raw_data, dict) else {}
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
        subject_specific=ScienceDetails(
            branch=optional_text(item.get("scienceBranch")) or default_branch,
            scientific_data=ScientificData(
                formulas_needed=string_tuple(raw_data.get("formulasNeeded")),
                constants=string_tuple(raw_data.get("constants")),
                safety_notes=string_tuple(raw_data.get("safetyNotes")),
            ),
        ),
    )
