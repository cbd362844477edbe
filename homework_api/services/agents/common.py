"""Helpers shared by every extraction agent.

Agents own prompt and schema; everything that turns loosely shaped model
output into canonical ``Exercise`` values lives here, including the one place
where model coordinates are reconciled with OCR fragment coordinates.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import httpx
from pydantic import ValidationError

from homework_api.errors import AgentError, SchemaMismatchError
from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import AgentId, RoutingDecision, Subject
from homework_api.schemas.exercises import (
    CanvasConfig,
    Difficulty,
    ExcludedExercise,
    Exercise,
    InlineConfig,
    InputType,
    MultipleChoiceConfig,
    PlaceholderPosition,
    Position,
    TextAreaConfig,
    TextInputConfig,
)
from homework_api.schemas.homework import AnalysisPreferences, OCRFragment
from homework_api.services.model_gateway import (
    GatewayResult,
    GatewaySettings,
    RetryPolicy,
    build_image_part,
    build_text_part,
    invoke_model,
)

logger = get_logger(__name__)

QUESTION_TEXT_FALLBACK_FIELDS = ("content", "text", "question", "problemStatement")
EXERCISE_NUMBER_FIELDS = ("exerciseNumber", "number", "exampleNumber", "id")

_EXERCISE_NUMBER_RE = re.compile(r"^[0-9A-Za-z]{1,8}$")
_NUMBER_PREFIX_RE = re.compile(
    r"^(?:(?:exercise|exercice|ejercicio|aufgabe|problem|question|task)\b|ex\.|no\.|nr\.)?\s*#?\s*",
    re.IGNORECASE,
)
_BLANK_MARKER_RE = re.compile(r"_{3,}|…+|\.{4,}|\[blank\]|\(blank\)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

_INPUT_TYPE_ALIASES = {
    "canvas": InputType.MATH_CANVAS,
    "drawing": InputType.DRAWING_CANVAS,
    "diagram": InputType.DRAWING_CANVAS,
    "fill_in_blank": InputType.INLINE,
    "fill_in_the_blank": InputType.INLINE,
    "blank": InputType.INLINE,
    "mcq": InputType.MULTIPLE_CHOICE,
    "choice": InputType.MULTIPLE_CHOICE,
    "short_answer": InputType.TEXT_INPUT,
    "essay": InputType.TEXT_AREA,
}

POSITION_SCHEMA = {
    "type": "object",
    "properties": {
        "startY": {"type": "number"},
        "endY": {"type": "number"},
    },
    "required": ["startY", "endY"],
}

INPUT_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "placeholders": {"type": "array", "items": {"type": "string"}},
        "placeholderPositions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "start": {"type": "integer"},
                    "end": {"type": "integer"},
                    "index": {"type": "integer"},
                    "expectedType": {"type": "string"},
                },
                "required": ["start", "end", "index"],
            },
        },
        "options": {"type": "array", "items": {"type": "string"}},
        "canvasType": {"type": "string"},
        "requiresGrid": {"type": "boolean"},
        "diagramType": {"type": "string"},
        "expectedUnits": {"type": "string"},
        "minWords": {"type": "integer"},
        "maxWords": {"type": "integer"},
        "expectedLength": {"type": "string"},
    },
}


def exercise_item_schema(*, extra_properties: dict | None = None, required: Sequence[str] = ()) -> dict:
    properties = {
        "exerciseNumber": {"type": "string"},
        "questionText": {"type": "string"},
        "questionLatex": {"type": "string"},
        "topic": {"type": "string"},
        "difficulty": {"type": "string", "enum": [item.value for item in Difficulty]},
        "estimatedTimeMinutes": {"type": "integer"},
        "inputType": {"type": "string", "enum": [item.value for item in InputType]},
        "inputConfig": INPUT_CONFIG_SCHEMA,
        "position": POSITION_SCHEMA,
        "relatedConcepts": {"type": "array", "items": {"type": "string"}},
        "solutionSteps": {"type": "array", "items": {"type": "string"}},
    }
    properties.update(extra_properties or {})
    return {
        "type": "object",
        "properties": properties,
        "required": ["exerciseNumber", "questionText", "inputType", *required],
    }


@dataclass(frozen=True)
class AgentContext:
    """Everything an agent needs to know about one request."""

    image_base64: str
    mime_type: str
    ocr_fragments: tuple[OCRFragment, ...]
    routing: RoutingDecision
    preferences: AnalysisPreferences | None = None


@dataclass
class ExerciseBatch:
    exercises: list[Exercise] = field(default_factory=list)
    excluded: list[ExcludedExercise] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    source_indices: list[int] = field(default_factory=list)


ExerciseBuilder = Callable[..., Exercise]


def format_ocr_fragments(fragments: Sequence[OCRFragment]) -> str:
    if not fragments:
        return "No OCR data available"
    return "\n".join(
        f"[Block {index}] Y: {fragment.start_y:.3f}-{fragment.end_y:.3f} | Text: {fragment.text}"
        for index, fragment in enumerate(fragments, start=1)
    )


def join_ocr_text(fragments: Sequence[OCRFragment]) -> str:
    if not fragments:
        return "No OCR text available"
    return "\n".join(fragment.text for fragment in fragments)


def format_preference_hints(preferences: AnalysisPreferences | None) -> str | None:
    if preferences is None:
        return None
    lines: list[str] = []
    if preferences.detail_level:
        lines.append(f"Detail level: {preferences.detail_level}")
    if preferences.preferred_language:
        lines.append(f"Write topics and hints in: {preferences.preferred_language}")
    if preferences.include_extra_practice is not None:
        lines.append(f"Include extra practice: {'yes' if preferences.include_extra_practice else 'no'}")
    if not lines:
        return None
    return "User preferences:\n" + "\n".join(lines)


def build_agent_parts(context: AgentContext) -> list[dict]:
    parts = [
        build_image_part(image_base64=context.image_base64, mime_type=context.mime_type),
        build_text_part(f"\n\nOCR Text with Positions:\n{format_ocr_fragments(context.ocr_fragments)}"),
        build_text_part(f"\n\nGrade Level: {context.routing.grade_level.value}"),
        build_text_part(f"\n\nSubject: {context.routing.subject.value}"),
    ]
    hints = format_preference_hints(context.preferences)
    if hints:
        parts.append(build_text_part(f"\n\n{hints}"))
    return parts


def invoke_agent_model(
    context: AgentContext,
    *,
    agent_id: AgentId,
    prompt: str,
    schema: dict,
    settings: GatewaySettings,
    policy: RetryPolicy,
    temperature: float = 0.2,
    client: httpx.Client | None = None,
) -> GatewayResult:
    logger.info(
        "%s: starting extraction (%d OCR fragments, grade level %s)",
        agent_id.value,
        len(context.ocr_fragments),
        context.routing.grade_level.value,
    )
    return invoke_model(
        prompt=prompt,
        schema=schema,
        parts=build_agent_parts(context),
        settings=settings,
        policy=policy,
        temperature=temperature,
        client=client,
    )


def require_object(data: object, *, agent_id: AgentId) -> dict:
    if not isinstance(data, dict):
        raise AgentError(f"expected a JSON object, got {type(data).__name__}", agent_id=agent_id.value)
    return data


def require_list(data: dict, key: str, *, agent_id: AgentId) -> list:
    value = data.get(key)
    if not isinstance(value, list):
        raise AgentError(f"response is missing the '{key}' list", agent_id=agent_id.value)
    return value


def resolve_question_text(item: dict) -> tuple[str, str]:
    """Return ``(text, source_field)``; raise when no usable text field exists."""
    text = _clean_text(item.get("questionText"))
    if text:
        return text, "questionText"
    for field_name in QUESTION_TEXT_FALLBACK_FIELDS:
        text = _clean_text(item.get(field_name))
        if text:
            return text, field_name
    raise SchemaMismatchError("exercise is missing questionText")


def raw_exercise_number(item: object) -> object:
    if not isinstance(item, dict):
        return None
    for field_name in EXERCISE_NUMBER_FIELDS:
        value = item.get(field_name)
        if value is not None:
            return value
    return None


def normalize_exercise_number(value: object) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    text = str(value).strip()
    text = _NUMBER_PREFIX_RE.sub("", text, count=1)
    text = text.strip().lstrip("(").rstrip(").:]").strip()
    text = _WHITESPACE_RE.sub("", text)
    if _EXERCISE_NUMBER_RE.match(text):
        return text
    return None


def assign_exercise_numbers(raw_numbers: Sequence[object]) -> list[str]:
    """Keep well-formed identifiers; fill the rest with the next unused integer."""
    normalized = [normalize_exercise_number(value) for value in raw_numbers]
    used = {number for number in normalized if number is not None}
    assigned: list[str] = []
    next_candidate = 1
    for number in normalized:
        if number is None:
            while str(next_candidate) in used:
                next_candidate += 1
            number = str(next_candidate)
            used.add(number)
        assigned.append(number)
    return assigned


def coerce_position(start: object, end: object, *, page_scale: float = 1.0) -> Position | None:
    """Map a model coordinate pair into [0, 1].

    ``page_scale`` is the height of the coordinate space the agent's schema
    uses (1.0 or ``1000``); values outside the page are clamped, never rescaled.
    """
    start_value = _to_float(start)
    end_value = _to_float(end)
    if start_value is None or end_value is None:
        return None
    start_value = _clamp01(start_value / page_scale)
    end_value = _clamp01(end_value / page_scale)
    if start_value > end_value:
        start_value, end_value = end_value, start_value
    return Position(start_y=start_value, end_y=end_value)


def position_from_raw(raw: object, *, page_scale: float = 1.0) -> Position | None:
    if not isinstance(raw, dict):
        return None
    start = raw.get("startY", raw.get("start_y"))
    end = raw.get("endY", raw.get("end_y"))
    return coerce_position(start, end, page_scale=page_scale)


def position_from_fragments(question_text: str, fragments: Sequence[OCRFragment]) -> Position | None:
    haystack = _normalize_for_match(question_text)
    if not haystack:
        return None
    matched = [
        fragment
        for fragment in fragments
        if (needle := _normalize_for_match(fragment.text)) and needle in haystack
    ]
    if not matched:
        return None
    return Position(
        start_y=min(fragment.start_y for fragment in matched),
        end_y=max(fragment.end_y for fragment in matched),
    )


def resolve_position(
    raw: object,
    *,
    question_text: str,
    fragments: Sequence[OCRFragment],
    label: str,
    warnings: list[str],
    page_scale: float = 1.0,
) -> Position:
    position = position_from_raw(raw, page_scale=page_scale)
    if position is not None:
        return position

    position = position_from_fragments(question_text, fragments)
    if position is not None:
        warnings.append(f"exercise {label}: position missing, derived from OCR fragments")
        return position

    warnings.append(f"exercise {label}: position missing, using the full page")
    return Position(start_y=0.0, end_y=1.0)


def parse_input_type(value: object, *, default: InputType) -> InputType:
    if not isinstance(value, str):
        return default
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    try:
        return InputType(key)
    except ValueError:
        return _INPUT_TYPE_ALIASES.get(key, default)


def parse_difficulty(value: object) -> Difficulty | None:
    if not isinstance(value, str):
        return None
    try:
        return Difficulty(value.strip().lower())
    except ValueError:
        return None


def parse_minutes(value: object) -> int | None:
    try:
        parsed = int(float(str(value)))
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed < 0:
        return None
    return parsed


def string_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(text for item in value if (text := _clean_text(item)))


def optional_string_tuple(value: object) -> tuple[str, ...] | None:
    if value is None:
        return None
    return string_tuple(value)


def optional_text(value: object) -> str | None:
    return _clean_text(value) or None


def build_input_config(input_type: InputType, raw: object, *, question_text: str):
    config = raw if isinstance(raw, dict) else {}

    if input_type is InputType.INLINE:
        return build_inline_config(config, question_text=question_text)

    if input_type is InputType.MULTIPLE_CHOICE:
        return MultipleChoiceConfig(options=string_tuple(config.get("options")))

    if input_type in (InputType.MATH_CANVAS, InputType.DRAWING_CANVAS):
        default_canvas = "math" if input_type is InputType.MATH_CANVAS else "drawing"
        requires_grid = config.get("requiresGrid")
        return CanvasConfig(
            canvas_type=_clean_text(config.get("canvasType")) or default_canvas,
            requires_grid=requires_grid if isinstance(requires_grid, bool) else None,
            diagram_type=optional_text(config.get("diagramType")),
            expected_units=_split_units(config.get("expectedUnits")),
        )

    if input_type is InputType.TEXT_AREA:
        return TextAreaConfig(
            min_words=parse_minutes(config.get("minWords")),
            max_words=parse_minutes(config.get("maxWords")),
        )

    return TextInputConfig(expected_length=optional_text(config.get("expectedLength")))


def build_inline_config(config: dict, *, question_text: str) -> InlineConfig:
    placeholders = string_tuple(config.get("placeholders"))
    positions = _valid_placeholder_positions(config.get("placeholderPositions"), text_length=len(question_text))
    if not positions:
        positions = find_blank_placeholders(question_text)
    if positions and len(placeholders) != len(positions):
        placeholders = tuple(f"blank{position.index + 1}" for position in positions)
    return InlineConfig(placeholders=placeholders, placeholder_positions=positions)


def find_blank_placeholders(question_text: str) -> tuple[PlaceholderPosition, ...]:
    return tuple(
        PlaceholderPosition(start=match.start(), end=match.end(), index=index)
        for index, match in enumerate(_BLANK_MARKER_RE.finditer(question_text))
    )


def collect_exercises(
    raw_items: list,
    *,
    agent_id: AgentId,
    fragments: Sequence[OCRFragment],
    build_exercise: ExerciseBuilder,
    numbers: Sequence[str] | None = None,
    fixed_position: Position | None = None,
    page_scale: float = 1.0,
    source_indices: Sequence[int] | None = None,
) -> ExerciseBatch:
    """Turn raw exercise entries into canonical exercises.

    ``build_exercise(item, number=..., question_text=..., position=...)`` is the
    agent specific part. Entries that cannot be repaired are excluded with a
    reason instead of failing the whole payload. ``source_indices`` maps each
    entry back to its position in the model response when the agent dropped
    entries before calling this.
    """
    batch = ExerciseBatch()
    if numbers is None:
        numbers = assign_exercise_numbers([raw_exercise_number(item) for item in raw_items])
    if source_indices is None:
        source_indices = range(len(raw_items))

    for position_in_batch, item in enumerate(raw_items):
        number = numbers[position_in_batch]
        index = source_indices[position_in_batch]
        if not isinstance(item, dict):
            _exclude(batch, agent_id=agent_id, index=index, number=None, reason="exercise entry is not an object")
            continue

        try:
            question_text, source_field = resolve_question_text(item)
        except SchemaMismatchError as exc:
            _exclude(batch, agent_id=agent_id, index=index, number=number, reason=str(exc))
            continue
        if source_field != "questionText":
            batch.warnings.append(f"exercise {number}: questionText taken from '{source_field}'")

        if fixed_position is not None:
            position = fixed_position
        else:
            position = resolve_position(
                item.get("position"),
                question_text=question_text,
                fragments=fragments,
                label=number,
                warnings=batch.warnings,
                page_scale=page_scale,
            )

        try:
            exercise = build_exercise(item, number=number, question_text=question_text, position=position)
        except ValidationError as exc:
            first_error = exc.errors()[0] if exc.errors() else {"msg": str(exc)}
            _exclude(batch, agent_id=agent_id, index=index, number=number, reason=f"invalid exercise: {first_error['msg']}")
            continue
        batch.exercises.append(exercise)
        batch.source_indices.append(index)

    logger.info(
        "%s: extracted %d exercises (%d excluded)",
        agent_id.value,
        len(batch.exercises),
        len(batch.excluded),
    )
    return batch


def language_for_subject(subject: Subject) -> str | None:
    if subject.value.startswith("Language-"):
        return subject.value.split("-", 1)[1]
    return None


def reduce_latex_escapes(value: str | None) -> str | None:
    if value is None:
        return None
    return value.replace("\\\\", "\\")


def _exclude(batch: ExerciseBatch, *, agent_id: AgentId, index: int, number: str | None, reason: str) -> None:
    logger.warning("%s: excluding exercise at index %d (%s)", agent_id.value, index, reason)
    batch.excluded.append(ExcludedExercise(index=index, number=number, reason=reason))


def _valid_placeholder_positions(raw: object, *, text_length: int) -> tuple[PlaceholderPosition, ...]:
    if not isinstance(raw, list):
        return ()
    positions: list[PlaceholderPosition] = []
    for item in raw:
        if not isinstance(item, dict):
            return ()
        start = _to_int(item.get("start"))
        end = _to_int(item.get("end"))
        index = _to_int(item.get("index"))
        if start is None or end is None or not 0 <= start < end <= text_length:
            return ()
        positions.append(
            PlaceholderPosition(
                start=start,
                end=end,
                index=index if index is not None and index >= 0 else len(positions),
                expected_type=optional_text(item.get("expectedType")),
            )
        )
    return tuple(positions)


def _split_units(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(unit.strip() for unit in re.split(r"[|,]", value) if unit.strip())
    return string_tuple(value)


def _clamp01(value: float) -> float:
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return value


def _normalize_for_match(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def _clean_text(value: object) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        return ""
    return value.strip()


def _to_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def _to_int(value: object) -> int | None:
    parsed = _to_float(value)
    if parsed is None or not parsed.is_integer():
        return None
    return int(parsed)
