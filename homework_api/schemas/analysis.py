from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field

from homework_api.schemas.exercises import ExcludedExercise, Exercise, FrozenModel, Position


class Subject(str, Enum):
    MATH = "Math"
    SCIENCE_PHYSICS = "Science-Physics"
    SCIENCE_CHEMISTRY = "Science-Chemistry"
    SCIENCE_BIOLOGY = "Science-Biology"
    LANGUAGE_ENGLISH = "Language-English"
    LANGUAGE_SPANISH = "Language-Spanish"
    LANGUAGE_FRENCH = "Language-French"
    LANGUAGE_GERMAN = "Language-German"
    HISTORY = "History"
    GEOGRAPHY = "Geography"
    ART = "Art"
    MUSIC = "Music"
    PE = "PE"
    CS = "CS"
    OTHER = "Other"


class ContentType(str, Enum):
    STUDY_MATERIAL = "study_material"
    EXERCISES = "exercises"
    HYBRID = "hybrid"


class GradeLevel(str, Enum):
    ELEMENTARY = "Elementary"
    MIDDLE_SCHOOL = "MiddleSchool"
    HIGH_SCHOOL = "HighSchool"
    UNIVERSITY = "University"
    UNKNOWN = "Unknown"


class AgentId(str, Enum):
    MATH_EXERCISE = "math_exercise_agent"
    SCIENCE_EXERCISE = "science_exercise_agent"
    LANGUAGE_EXERCISE = "language_exercise_agent"
    STUDY_MATERIAL = "study_material_agent"
    GENERIC_EXERCISE = "generic_exercise_agent"


ROUTER_AGENT_NAME = "router_agent"


class RoutingDecision(FrozenModel):
    subject: Subject
    content_type: ContentType
    grade_level: GradeLevel
    confidence: float = Field(ge=0.0, le=1.0)
    agent_id: AgentId
    raw_subject: str | None = None


class KeyPoint(FrozenModel):
    point: str
    importance: Literal["high", "medium", "low"] = "medium"
    position: Position | None = None


class HighlightedElement(FrozenModel):
    type: Literal["definition", "theorem", "formula", "example"]
    content: str
    latex_content: str | None = None
    position: Position | None = None


class WorkedExample(FrozenModel):
    number: str
    problem_statement: str
    problem_latex: str | None = None
    topic: str = ""
    solution_steps: tuple[str, ...] = ()
    position: Position | None = None


class StudyMaterialSummary(FrozenModel):
    title: str
    main_topics: tuple[str, ...] = ()
    key_points: tuple[KeyPoint, ...] = ()
    highlighted_elements: tuple[HighlightedElement, ...] = ()
    worked_examples: tuple[WorkedExample, ...] = ()
    position: Position | None = None


class OverallMetadata(FrozenModel):
    topics: tuple[str, ...] = ()
    estimated_total_minutes: int | None = None
    difficulty_distribution: dict[str, int] = Field(default_factory=dict)
    requires_lab_equipment: bool | None = None
    exercise_types: tuple[str, ...] = ()


class _PayloadBase(FrozenModel):
    agent_id: AgentId
    model: str
    attempts: int = Field(ge=1)
    exercises: tuple[Exercise, ...] = ()
    excluded: tuple[ExcludedExercise, ...] = ()
    warnings: tuple[str, ...] = ()
    # Position of each exercise in the raw model response.
    source_indices: tuple[int, ...] = Field(default=(), exclude=True)


class MathPayload(_PayloadBase):
    kind: Literal["math"] = "math"


class SciencePayload(_PayloadBase):
    kind: Literal["science"] = "science"
    science_branch: str | None = None
    overall: OverallMetadata | None = None


class LanguagePayload(_PayloadBase):
    kind: Literal["language"] = "language"
    language: str | None = None
    overall: OverallMetadata | None = None


class StudyMaterialPayload(_PayloadBase):
    kind: Literal["study_material"] = "study_material"
    summary: StudyMaterialSummary


class GenericPayload(_PayloadBase):
    kind: Literal["generic"] = "generic"
    page_summary: str | None = None
    skipped_sections: int = 0


AgentPayload = Annotated[
    Union[MathPayload, SciencePayload, LanguagePayload, StudyMaterialPayload, GenericPayload],
    Field(discriminator="kind"),
]


class AnalysisMetadata(FrozenModel):
    processing_time_ms: int
    agents_invoked: tuple[str, ...]
    model_versions: dict[str, str]
    timestamp: str
    gateway_attempts: dict[str, int] = Field(default_factory=dict)
    excluded_exercise_count: int = 0
    coerced_exercise_count: int = 0
    exclusions: tuple[ExcludedExercise, ...] = ()
    warnings: tuple[str, ...] = ()
    partial: bool = False


class AnalysisEnvelope(FrozenModel):
    routing: RoutingDecision
    exercises: tuple[Exercise, ...]
    lesson_summary: StudyMaterialSummary | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    metadata: AnalysisMetadata

    def to_response(self) -> dict[str, Any]:
        """Serialize with the stable wire layout: routing / analysis / metadata."""
        analysis_type = "study_material" if self.lesson_summary is not None else "exercises"
        return {
            "routing": self.routing.model_dump(mode="json", by_alias=True),
            "analysis": {
                "type": analysis_type,
                "subject": self.routing.subject.value,
                "exercises": [item.model_dump(mode="json", by_alias=True) for item in self.exercises],
                "lessonSummary": (
                    self.lesson_summary.model_dump(mode="json", by_alias=True) if self.lesson_summary else None
                ),
                "details": self.details,
            },
            "metadata": self.metadata.model_dump(mode="json", by_alias=True),
        }
