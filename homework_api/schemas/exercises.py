from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class InputType(str, Enum):
    MATH_CANVAS = "math_canvas"
    DRAWING_CANVAS = "drawing_canvas"
    TEXT_AREA = "text_area"
    TEXT_INPUT = "text_input"
    INLINE = "inline"
    MULTIPLE_CHOICE = "multiple_choice"


CANVAS_INPUT_TYPES = {InputType.MATH_CANVAS, InputType.DRAWING_CANVAS}


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class Position(FrozenModel):
    start_y: float = Field(ge=0.0, le=1.0)
    end_y: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_order(self) -> Position:
        if self.start_y > self.end_y:
            raise ValueError("startY must not exceed endY")
        return self


class PlaceholderPosition(FrozenModel):
    start: int = Field(ge=0)
    end: int = Field(ge=0)
    index: int = Field(ge=0)
    expected_type: str | None = None


class InlineConfig(FrozenModel):
    kind: Literal["inline"] = "inline"
    placeholders: tuple[str, ...] = ()
    placeholder_positions: tuple[PlaceholderPosition, ...] = ()


class MultipleChoiceConfig(FrozenModel):
    kind: Literal["multiple_choice"] = "multiple_choice"
    options: tuple[str, ...] = ()


class CanvasConfig(FrozenModel):
    kind: Literal["canvas"] = "canvas"
    canvas_type: str = "math"
    requires_grid: bool | None = None
    diagram_type: str | None = None
    expected_units: tuple[str, ...] = ()


class TextAreaConfig(FrozenModel):
    kind: Literal["text_area"] = "text_area"
    min_words: int | None = None
    max_words: int | None = None


class TextInputConfig(FrozenModel):
    kind: Literal["text_input"] = "text_input"
    expected_length: str | None = None


InputConfig = Annotated[
    Union[InlineConfig, MultipleChoiceConfig, CanvasConfig, TextAreaConfig, TextInputConfig],
    Field(discriminator="kind"),
]

CONFIG_KIND_BY_INPUT_TYPE: dict[InputType, str] = {
    InputType.INLINE: "inline",
    InputType.MULTIPLE_CHOICE: "multiple_choice",
    InputType.MATH_CANVAS: "canvas",
    InputType.DRAWING_CANVAS: "canvas",
    InputType.TEXT_AREA: "text_area",
    InputType.TEXT_INPUT: "text_input",
}


class ScientificData(FrozenModel):
    formulas_needed: tuple[str, ...] = ()
    constants: tuple[str, ...] = ()
    safety_notes: tuple[str, ...] = ()


class MathDetails(FrozenModel):
    kind: Literal["math"] = "math"
    formulas: tuple[str, ...] = ()


class ScienceDetails(FrozenModel):
    kind: Literal["science"] = "science"
    branch: str | None = None
    scientific_data: ScientificData = ScientificData()


class LanguageDetails(FrozenModel):
    kind: Literal["language"] = "language"
    language: str | None = None
    exercise_type: str | None = None
    grammar_pattern: str | None = None


class StudyDetails(FrozenModel):
    kind: Literal["study"] = "study"
    source: Literal["practice", "worked_example"] = "practice"
    hints: tuple[str, ...] = ()


class GenericDetails(FrozenModel):
    kind: Literal["generic"] = "generic"
    section_title: str | None = None


SubjectSpecific = Annotated[
    Union[MathDetails, ScienceDetails, LanguageDetails, StudyDetails, GenericDetails],
    Field(discriminator="kind"),
]


class Exercise(FrozenModel):
    """Canonical exercise shared by every agent payload."""

    number: str = Field(min_length=1, pattern=r"^[0-9A-Za-z]+$")
    question_text: str = Field(min_length=1)
    question_latex: str | None = None
    topic: str = ""
    difficulty: Difficulty | None = None
    estimated_minutes: int | None = Field(default=None, ge=0)
    input_type: InputType
    input_config: InputConfig | None = None
    position: Position
    related_concepts: tuple[str, ...] | None = None
    solution_steps: tuple[str, ...] | None = None
    subject_specific: SubjectSpecific = GenericDetails()

    @model_validator(mode="after")
    def check_input_config(self) -> Exercise:
        if self.input_config is not None:
            expected_kind = CONFIG_KIND_BY_INPUT_TYPE[self.input_type]
            if self.input_config.kind != expected_kind:
                raise ValueError(
                    f"inputConfig kind {self.input_config.kind!r} does not match inputType {self.input_type.value!r}"
                )
        return self


class ExcludedExercise(FrozenModel):
    index: int
    number: str | None = None
    reason: str
