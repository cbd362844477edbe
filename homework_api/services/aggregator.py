"""Normalizes an agent payload into the canonical analysis envelope."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import (
    ROUTER_AGENT_NAME,
    AgentPayload,
    AnalysisEnvelope,
    AnalysisMetadata,
    GenericPayload,
    LanguagePayload,
    MathPayload,
    OverallMetadata,
    SciencePayload,
    StudyMaterialPayload,
    StudyMaterialSummary,
)
from homework_api.schemas.exercises import (
    ExcludedExercise,
    Exercise,
    InlineConfig,
    InputType,
    MultipleChoiceConfig,
    TextInputConfig,
)
from homework_api.services.document_router import RouterRun

logger = get_logger(__name__)

MIN_CHOICE_OPTIONS = 2


def assemble(router_run: RouterRun, payload: AgentPayload, *, processing_time_ms: int) -> AnalysisEnvelope:
    normalize = _NORMALIZERS[type(payload)]
    details, lesson_summary = normalize(payload)

    warnings = list(payload.warnings)
    exercises, coerced_count = _coerce_exercises(payload.exercises, warnings)
    exercises, duplicates = _exclude_duplicates(exercises, payload.source_indices)
    exclusions = tuple(payload.excluded) + tuple(duplicates)

    # sorted() is stable, so equal startY values keep emission order.
    exercises = sorted(exercises, key=lambda exercise: exercise.position.start_y)

    routing = router_run.decision
    metadata = AnalysisMetadata(
        processing_time_ms=processing_time_ms,
        agents_invoked=(ROUTER_AGENT_NAME, payload.agent_id.value),
        model_versions={"router": router_run.model, "specialist": payload.model},
        timestamp=datetime.now(timezone.utc).isoformat(),
        gateway_attempts={"router": router_run.attempts, "specialist": payload.attempts},
        excluded_exercise_count=len(exclusions),
        coerced_exercise_count=coerced_count,
        exclusions=exclusions,
        warnings=tuple(warnings),
        partial=len(exclusions) > 0,
    )
    return AnalysisEnvelope(
        routing=routing,
        exercises=tuple(exercises),
        lesson_summary=lesson_summary,
        details=details,
        metadata=metadata,
    )


def _normalize_math(payload: MathPayload) -> tuple[dict[str, Any], StudyMaterialSummary | None]:
    return {}, None


def _normalize_science(payload: SciencePayload) -> tuple[dict[str, Any], StudyMaterialSummary | None]:
    details: dict[str, Any] = {"scienceBranch": payload.science_branch}
    details.update(_overall_details(payload.overall))
    return details, None


def _normalize_language(payload: LanguagePayload) -> tuple[dict[str, Any], StudyMaterialSummary | None]:
    details: dict[str, Any] = {"language": payload.language}
    details.update(_overall_details(payload.overall))
    return details, None


def _normalize_study_material(payload: StudyMaterialPayload) -> tuple[dict[str, Any], StudyMaterialSummary | None]:
    return {"practiceExerciseCount": len(payload.exercises)}, payload.summary


def _normalize_generic(payload: GenericPayload) -> tuple[dict[str, Any], StudyMaterialSummary | None]:
    return {"pageSummary": payload.page_summary, "skippedSections": payload.skipped_sections}, None


_NORMALIZERS: dict[type, Callable[[Any], tuple[dict[str, Any], StudyMaterialSummary | None]]] = {
    MathPayload: _normalize_math,
    SciencePayload: _normalize_science,
    LanguagePayload: _normalize_language,
    StudyMaterialPayload: _normalize_study_material,
    GenericPayload: _normalize_generic,
}


def _overall_details(overall: OverallMetadata | None) -> dict[str, Any]:
    if overall is None:
        return {}
    return {"overallMetadata": overall.model_dump(mode="json", by_alias=True)}


def _coerce_exercises(exercises: tuple[Exercise, ...], warnings: list[str]) -> tuple[list[Exercise], int]:
    coerced: list[Exercise] = []
    count = 0
    for exercise in exercises:
        reason = coercion_reason(exercise)
        if reason is None:
            coerced.append(exercise)
            continue
        count += 1
        message = f"exercise {exercise.number}: {reason}, coerced to text_input"
        logger.warning("aggregator: %s", message)
        warnings.append(message)
        coerced.append(
            exercise.model_copy(update={"input_type": InputType.TEXT_INPUT, "input_config": TextInputConfig()})
        )
    return coerced, count


def coercion_reason(exercise: Exercise) -> str | None:
    config = exercise.input_config
    if exercise.input_type is InputType.INLINE:
        if not isinstance(config, InlineConfig) or not (config.placeholders or config.placeholder_positions):
            return "inline exercise has no placeholders"
    if exercise.input_type is InputType.MULTIPLE_CHOICE:
        if not isinstance(config, MultipleChoiceConfig) or len(config.options) < MIN_CHOICE_OPTIONS:
            return "multiple_choice exercise has fewer than two options"
    return None


def _exclude_duplicates(
    exercises: list[Exercise], source_indices: tuple[int, ...] = ()
) -> tuple[list[Exercise], list[ExcludedExercise]]:
    """Drop repeated (number, text) pairs, reporting the index the model emitted them at."""
    indices = source_indices if len(source_indices) == len(exercises) else range(len(exercises))
    kept: list[Exercise] = []
    excluded: list[ExcludedExercise] = []
    seen: set[tuple[str, str]] = set()
    for index, exercise in zip(indices, exercises):
        key = (exercise.number, " ".join(exercise.question_text.split()).lower())
        if key in seen:
            reason = "duplicate of an earlier exercise with the same number and text"
            logger.warning("aggregator: excluding exercise %s (%s)", exercise.number, reason)
            excluded.append(ExcludedExercise(index=index, number=exercise.number, reason=reason))
            continue
        seen.add(key)
        kept.append(exercise)
    return kept, excluded
