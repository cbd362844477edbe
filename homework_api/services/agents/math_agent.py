from __future__ import annotations

import httpx

from homework_api.schemas.analysis import AgentId, MathPayload
from homework_api.schemas.exercises import Exercise, InputType, MathDetails, Position
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
    reduce_latex_escapes,
    require_list,
    require_object,
    string_tuple,
)
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

AGENT_ID = AgentId.MATH_EXERCISE

MATH_EXERCISE_PROMPT = r"""You are a mathematics exercise extraction agent. Identify and extract every individual exercise on the page. Do NOT solve the exercises and do NOT write hints.

Exercise grouping:
- Subparts (2a, 2b, 2c) belong to ONE exercise. Combine them into a single questionText and questionLatex.
- Use the parent exercise number ("2", not "2a").

For each exercise:
1. exerciseNumber: the number printed on the page.
2. questionText: the complete question exactly as written, including all subparts.
3. questionLatex: the same question with mathematical notation in LaTeX.
4. topic: the specific topic (e.g. "Linear Equations", "Comparing Decimals").
5. position: startY and endY between 0.0 (top of the image) and 1.0 (bottom), taken from the OCR block Y coordinates. The range must cover all subparts and any diagram.
6. inputType, how the student answers:
   - "text_input": a single answer (number, word, true/false)
   - "inline": fill in blanks inside text or equations
   - "multiple_choice": lettered options are given
   - "text_area": an explanation is required
   - "math_canvas": show work, calculations, equations
   - "drawing_canvas": geometric constructions, sketches
7. formulas: formulas the exercise refers to, in LaTeX.

LaTeX inside JSON strings: use single backslashes, e.g. "$5 \times 10$" and "$\frac{1}{2}$".

Return ONLY a JSON object: {"exercises": [...]}"""

MATH_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "exercises": {
            "type": "array",
            "items": exercise_item_schema(
                extra_properties={"formulas": {"type": "array", "items": {"type": "string"}}},
                required=("position",),
            ),
        },
    },
    "required": ["exercises"],
}


def extract_math_exercises(
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> MathPayload:
    result = invoke_agent_model(
        context,
        agent_id=AGENT_ID,
        prompt=MATH_EXERCISE_PROMPT,
        schema=MATH_RESPONSE_SCHEMA,
        settings=settings,
        policy=policy,
        temperature=0.2,
        client=client,
    )
    data = require_object(result.data, agent_id=AGENT_ID)
    batch = collect_exercises(
        require_list(data, "exercises", agent_id=AGENT_ID),
        agent_id=AGENT_ID,
        fragments=context.ocr_fragments,
        build_exercise=_build_math_exercise,
    )
    return MathPayload(
        agent_id=AGENT_ID,
        model=result.model,
        attempts=result.attempts,
        exercises=tuple(batch.exercises),
        excluded=tuple(batch.excluded),
        warnings=tuple(batch.warnings),
        source_indices=tuple(batch.source_indices),
    )


def _build_math_exercise(item: dict, *, number: str, question_text: str, position: Position) -> Exercise:
    input_type = parse_input_type(item.get("inputType"), default=InputType.MATH_CANVAS)
    return Exercise(
        number=number,
        question_text=question_text,
        question_latex=reduce_latex_escapes(optional_text(item.get("questionLatex"))),
        topic=optional_text(item.get("topic")) or "",
        difficulty=parse_difficulty(item.get("difficulty")),
        estimated_minutes=parse_minutes(item.get("estimatedTimeMinutes")),
        input_type=input_type,
        input_config=build_input_config(input_type, item.get("inputConfig"), question_text=question_text),
        position=position,
        related_concepts=optional_string_tuple(item.get("relatedConcepts")),
        solution_steps=optional_string_tuple(item.get("solutionSteps")),
        subject_specific=MathDetails(formulas=string_tuple(item.get("formulas"))),
    )
