from __future__ import annotations

import httpx

from homework_api.schemas.analysis import AgentId, LanguagePayload
from homework_api.schemas.exercises import Exercise, InputType, LanguageDetails, Position
from homework_api.services.agents.common import (
    AgentContext,
    build_input_config,
    collect_exercises,
    exercise_item_schema,
    invoke_agent_model,
    language_for_subject,
    optional_string_tuple,
    optional_text,
    parse_difficulty,
    parse_input_type,
    parse_minutes,
    require_list,
    require_object,
)
from homework_api.services.agents.science_agent import OVERALL_METADATA_SCHEMA, build_overall_metadata
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

AGENT_ID = AgentId.LANGUAGE_EXERCISE

LANGUAGE_EXERCISE_PROMPT = """You are a language and grammar exercise analysis agent. Extract ALL individual exercises on the page.

For each exercise:
1. exerciseNumber, questionText (complete, blanks kept exactly as printed), topic (e.g. "Verb Conjugation", "Vocabulary"), language, difficulty (easy, medium, hard), estimatedTimeMinutes.
2. inputType, the UI component the student answers with:
   - "inline": blanks inside sentences, e.g. "The cat ___ on the mat", "Je ___ francais"
   - "text_input": a single word or short phrase, e.g. "Translate:", "What is the past tense of"
   - "text_area": paragraphs or essays, e.g. "Write a paragraph about"
   - "multiple_choice": options listed as A) B) C) D) or numbered choices
3. inputConfig:
   - inline: placeholders and placeholderPositions (start/end character offsets of each blank in questionText, index, expectedType such as a part of speech)
   - multiple_choice: every option text
   - text_area: minWords and maxWords
   - text_input: expectedLength (short, medium, long)
4. exerciseType (fill_in_blank, translation, conjugation, comprehension, writing, ...) and grammarPattern when one applies.
5. position: startY and endY between 0.0 (top) and 1.0 (bottom) from the OCR block Y coordinates.
6. relatedConcepts and 3-5 solutionSteps that hint without giving the answer.

Also return the page language and overallMetadata (topics, estimatedTotalTime, difficultyDistribution).

Return ONLY a JSON object: {"language": "...", "exercises": [...], "overallMetadata": {...}}"""

LANGUAGE_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "language": {"type": "string"},
        "exercises": {
            "type": "array",
            "items": exercise_item_schema(
                extra_properties={
                    "language": {"type": "string"},
                    "exerciseType": {"type": "string"},
                    "grammarPattern": {"type": "string"},
                },
                required=("position",),
            ),
        },
        "overallMetadata": OVERALL_METADATA_SCHEMA,
    },
    "required": ["exercises"],
}


def extract_language_exercises(
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> LanguagePayload:
    result = invoke_agent_model(
        context,
        agent_id=AGENT_ID,
        prompt=LANGUAGE_EXERCISE_PROMPT,
        schema=LANGUAGE_RESPONSE_SCHEMA,
        settings=settings,
        policy=policy,
        temperature=0.3,
        client=client,
    )
    data = require_object(result.data, agent_id=AGENT_ID)
    language = optional_text(data.get("language")) or language_for_subject(context.routing.subject)

    def build(item: dict, *, number: str, question_text: str, position: Position) -> Exercise:
        return _build_language_exercise(
            item,
            number=number,
            question_text=question_text,
            position=position,
            default_language=language,
        )

    batch = collect_exercises(
        require_list(data, "exercises", agent_id=AGENT_ID),
        agent_id=AGENT_ID,
        fragments=context.ocr_fragments,
        build_exercise=build,
    )
    return LanguagePayload(
        agent_id=AGENT_ID,
        model=result.model,
        attempts=result.attempts,
        exercises=tuple(batch.exercises),
        excluded=tuple(batch.excluded),
        warnings=tuple(batch.warnings),
        source_indices=tuple(batch.source_indices),
        language=language,
        overall=build_overall_metadata(data.get("overallMetadata")),
    )


def _build_language_exercise(
    item: dict,
    *,
    number: str,
    question_text: str,
    position: Position,
    default_language: str | None,
) -> Exercise:
    # The model's classification is kept even when a blank-vs-short-answer call looks debatable.
    input_type = parse_input_type(item.get("inputType"), default=InputType.TEXT_INPUT)
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
        subject_specific=LanguageDetails(
            language=optional_text(item.get("language")) or default_language,
            exercise_type=optional_text(item.get("exerciseType")),
            grammar_pattern=optional_text(item.get("grammarPattern")),
        ),
    )
