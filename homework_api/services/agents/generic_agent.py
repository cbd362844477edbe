"""Fallback agent: segments the page into EXERCISE and SKIP sections.

Section bounds come back as integers in a 0-1000 page space; the shared
exercise pipeline scales them once and clamps anything past the page edge.
"""

from __future__ import annotations

import re

import httpx

from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import AgentId, GenericPayload
from homework_api.schemas.exercises import Exercise, GenericDetails, InputType, Position
from homework_api.services.agents.common import (
    AgentContext,
    build_input_config,
    collect_exercises,
    invoke_agent_model,
    normalize_exercise_number,
    optional_text,
    parse_input_type,
    require_list,
    require_object,
)
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

logger = get_logger(__name__)

AGENT_ID = AgentId.GENERIC_EXERCISE
PAGE_SPACE = 1000

GENERIC_EXERCISE_PROMPT = """You are a homework analysis engine. Using the image and the OCR text with Y coordinates, segment the page into sections and classify each one as EXERCISE or SKIP.

EXERCISE:
- numbered problems or tasks ("1.", "2.", "a)", "Exercise 8")
- imperative verbs: Find, Calculate, Solve, Show, Prove, Determine, Complete, Fill in, Draw, Explain, Write, Compute
- questions the student has to answer

SKIP:
- page headers, footers, titles and page numbers
- instructions about the assignment itself ("Complete all problems by Friday")
- teacher notes, administrative or decorative text

Rules:
- A numbered item with a question or task is an EXERCISE. When in doubt between EXERCISE and SKIP for a numbered item, choose EXERCISE.
- Each EXERCISE is one complete, self-contained task. Segment by visual gaps and Y coordinate jumps.
- yStart and yEnd are integers from 0 (top of the page) to 1000 (bottom): the minimum and maximum Y of the text belonging to the section.
- content is the complete, readable text of the section, synthesized from the OCR data.
- title is a short identifier ("Exercise 8", "Problem 3", "Header").

Return ONLY a JSON object: {"summary": "...", "sections": [...]}"""

GENERIC_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["EXERCISE", "SKIP"]},
                    "title": {"type": "string"},
                    "content": {"type": "string"},
                    "yStart": {"type": "integer"},
                    "yEnd": {"type": "integer"},
                },
                "required": ["type", "title", "content", "yStart", "yEnd"],
            },
        },
    },
    "required": ["summary", "sections"],
}

_DIGITS_RE = re.compile(r"\d+")


def extract_generic_exercises(
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> GenericPayload:
    result = invoke_agent_model(
        context,
        agent_id=AGENT_ID,
        prompt=GENERIC_EXERCISE_PROMPT,
        schema=GENERIC_RESPONSE_SCHEMA,
        settings=settings,
        policy=policy,
        temperature=0.2,
        client=client,
    )
    data = require_object(result.data, agent_id=AGENT_ID)
    sections = require_list(data, "sections", agent_id=AGENT_ID)

    items: list[object] = []
    kept_indices: list[int] = []
    skipped = 0
    for index, section in enumerate(sections):
        if isinstance(section, dict) and str(section.get("type") or "").strip().upper() == "SKIP":
            skipped += 1
            continue
        items.append(section_to_exercise_item(section))
        kept_indices.append(index)
    logger.info("%s: %d sections, %d skipped", AGENT_ID.value, len(sections), skipped)

    batch = collect_exercises(
        items,
        agent_id=AGENT_ID,
        fragments=context.ocr_fragments,
        build_exercise=_build_generic_exercise,
        page_scale=PAGE_SPACE,
        source_indices=kept_indices,
    )
    return GenericPayload(
        agent_id=AGENT_ID,
        model=result.model,
        attempts=result.attempts,
        exercises=tuple(batch.exercises),
        excluded=tuple(batch.excluded),
        warnings=tuple(batch.warnings),
        source_indices=tuple(batch.source_indices),
        page_summary=optional_text(data.get("summary")),
        skipped_sections=skipped,
    )


def section_to_exercise_item(section: object) -> object:
    """Map a page section onto the exercise item shape shared by all agents."""
    if not isinstance(section, dict):
        return section
    title = optional_text(section.get("title"))
    item = {
        "exerciseNumber": _section_number(title),
        "questionText": optional_text(section.get("content")) or title,
        "sectionTitle": title,
        "inputType": section.get("inputType"),
    }
    y_start = section.get("yStart")
    y_end = section.get("yEnd")
    if y_start is not None and y_end is not None:
        item["position"] = {"startY": y_start, "endY": y_end}
    return item


def _section_number(title: str | None) -> str | None:
    # "Exercise 2a" keeps its letter; titles without any digit stay unnumbered.
    number = normalize_exercise_number(title)
    if number is not None and any(ch.isdigit() for ch in number):
        return number
    digits = _DIGITS_RE.search(title or "")
    return digits.group(0) if digits else None


def _build_generic_exercise(item: dict, *, number: str, question_text: str, position: Position) -> Exercise:
    input_type = parse_input_type(item.get("inputType"), default=InputType.TEXT_AREA)
    return Exercise(
        number=number,
        question_text=question_text,
        input_type=input_type,
        input_config=build_input_config(input_type, item.get("inputConfig"), question_text=question_text),
        position=position,
        subject_specific=GenericDetails(section_title=item.get("sectionTitle")),
    )
