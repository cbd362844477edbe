from homework_api.schemas.analysis import (
    AgentId,
    ContentType,
    GenericPayload,
    GradeLevel,
    MathPayload,
    OverallMetadata,
    RoutingDecision,
    SciencePayload,
    StudyMaterialPayload,
    StudyMaterialSummary,
    Subject,
)
from homework_api.schemas.exercises import (
    ExcludedExercise,
    Exercise,
    InlineConfig,
    InputType,
    MultipleChoiceConfig,
    Position,
    TextInputConfig,
)
from homework_api.services.aggregator import assemble, coercion_reason
from homework_api.services.document_router import RouterRun


def test_assemble_sorts_by_start_y_and_keeps_emission_order_for_ties():
    payload = MathPayload(
        agent_id=AgentId.MATH_EXERCISE,
        model="gemini-2.5-flash",
        attempts=1,
        exercises=(
            _exercise("3", "Third", 0.7),
            _exercise("1", "First", 0.2),
            _exercise("2a", "Tie A", 0.4),
            _exercise("2b", "Tie B", 0.4),
        ),
    )

    envelope = assemble(_router_run(), payload, processing_time_ms=42)

    assert [exercise.number for exercise in envelope.exercises] == ["1", "2a", "2b", "3"]
    assert envelope.metadata.processing_time_ms == 42
    assert envelope.metadata.partial is False


def test_assemble_excludes_duplicates_and_marks_result_partial():
    payload = MathPayload(
        agent_id=AgentId.MATH_EXERCISE,
        model="gemini-2.5-flash",
        attempts=2,
        exercises=(
            _exercise("1", "Solve  x + 1 = 2", 0.1),
            _exercise("1", "solve x + 1 = 2", 0.5),
            _exercise("2", "Solve x + 1 = 2", 0.6),
        ),
        excluded=(ExcludedExercise(index=5, number="6", reason="exercise is missing questionText"),),
    )

    envelope = assemble(_router_run(), payload, processing_time_ms=10)

    assert [exercise.number for exercise in envelope.exercises] == ["1", "2"]
    assert envelope.metadata.excluded_exercise_count == 2
    assert envelope.metadata.partial is True
    assert envelope.metadata.exclusions[1].reason.startswith("duplicate")


def test_duplicate_exclusion_reports_the_index_the_model_emitted():
    payload = MathPayload(
        agent_id=AgentId.MATH_EXERCISE,
        model="gemini-2.5-flash",
        attempts=1,
        exercises=(
            _exercise("1", "Solve x + 1 = 2", 0.1),
            _exercise("1", "Solve x + 1 = 2", 0.5),
        ),
        excluded=(ExcludedExercise(index=1, number="2", reason="exercise is missing questionText"),),
        source_indices=(0, 2),
    )

    envelope = assemble(_router_run(), payload, processing_time_ms=10)

    assert [item.index for item in envelope.metadata.exclusions] == [1, 2]


def test_source_indices_stay_internal_to_the_payload():
    payload = MathPayload(
        agent_id=AgentId.MATH_EXERCISE,
        model="gemini-2.5-flash",
        attempts=1,
        exercises=(_exercise("1", "Solve", 0.1),),
        source_indices=(3,),
    )

    assert "source_indices" not in payload.model_dump()


def test_assemble_coerces_inline_without_placeholders_and_short_choice_lists():
    payload = MathPayload(
        agent_id=AgentId.MATH_EXERCISE,
        model="gemini-2.5-flash",
        attempts=1,
        exercises=(
            _exercise("1", "Fill in", 0.1, input_type=InputType.INLINE, input_config=InlineConfig()),
            _exercise(
                "2",
                "Pick one",
                0.2,
                input_type=InputType.MULTIPLE_CHOICE,
                input_config=MultipleChoiceConfig(options=("only",)),
            ),
            _exercise(
                "3",
                "Pick one of two",
                0.3,
                input_type=InputType.MULTIPLE_CHOICE,
                input_config=MultipleChoiceConfig(options=("a", "b")),
            ),
        ),
    )

    envelope = assemble(_router_run(), payload, processing_time_ms=1)

    types = [exercise.input_type for exercise in envelope.exercises]
    assert types == [InputType.TEXT_INPUT, InputType.TEXT_INPUT, InputType.MULTIPLE_CHOICE]
    assert isinstance(envelope.exercises[0].input_config, TextInputConfig)
    assert envelope.metadata.coerced_exercise_count == 2
    assert envelope.metadata.partial is False
    assert len(envelope.metadata.warnings) == 2


def test_coercion_reason_accepts_inline_with_placeholders():
    exercise = _exercise(
        "1",
        "She ___ home.",
        0.1,
        input_type=InputType.INLINE,
        input_config=InlineConfig(placeholders=("blank1",)),
    )

    assert coercion_reason(exercise) is None


def test_metadata_records_agents_models_and_attempts():
    payload = GenericPayload(
        agent_id=AgentId.GENERIC_EXERCISE,
        model="gemini-2.5-pro",
        attempts=3,
        page_summary="Art worksheet",
        skipped_sections=2,
    )

    envelope = assemble(_router_run(subject=Subject.ART, agent_id=AgentId.GENERIC_EXERCISE), payload, processing_time_ms=5)
    response = envelope.to_response()

    assert response["metadata"]["agentsInvoked"] == ["router_agent", "generic_exercise_agent"]
    assert response["metadata"]["modelVersions"] == {"router": "gemini-2.5-flash", "specialist": "gemini-2.5-pro"}
    assert response["metadata"]["gatewayAttempts"] == {"router": 1, "specialist": 3}
    assert response["analysis"]["details"] == {"pageSummary": "Art worksheet", "skippedSections": 2}
    assert response["analysis"]["type"] == "exercises"
    assert response["routing"]["agentId"] == "generic_exercise_agent"
    assert response["metadata"]["timestamp"].endswith("+00:00")


def test_science_details_include_overall_metadata():
    payload = SciencePayload(
        agent_id=AgentId.SCIENCE_EXERCISE,
        model="gemini-2.5-flash",
        attempts=1,
        science_branch="Physics",
        overall=OverallMetadata(topics=("kinematics",), requires_lab_equipment=True),
    )

    envelope = assemble(_router_run(subject=Subject.SCIENCE_PHYSICS, agent_id=AgentId.SCIENCE_EXERCISE), payload, processing_time_ms=1)

    assert envelope.details["scienceBranch"] == "Physics"
    assert envelope.details["overallMetadata"]["topics"] == ["kinematics"]
    assert envelope.details["overallMetadata"]["requiresLabEquipment"] is True


def test_study_material_envelope_carries_lesson_summary():
    payload = StudyMaterialPayload(
        agent_id=AgentId.STUDY_MATERIAL,
        model="gemini-2.5-flash",
        attempts=1,
        summary=StudyMaterialSummary(title="Photosynthesis", main_topics=("plants",)),
        exercises=(_exercise("P1", "Name the inputs of photosynthesis", 0.0),),
    )

    envelope = assemble(
        _router_run(subject=Subject.SCIENCE_BIOLOGY, agent_id=AgentId.STUDY_MATERIAL, content_type=ContentType.STUDY_MATERIAL),
        payload,
        processing_time_ms=1,
    )
    response = envelope.to_response()

    assert response["analysis"]["type"] == "study_material"
    assert response["analysis"]["lessonSummary"]["title"] == "Photosynthesis"
    assert response["analysis"]["details"] == {"practiceExerciseCount": 1}


def _exercise(number, text, start_y, *, input_type=InputType.TEXT_INPUT, input_config=None):
    return Exercise(
        number=number,
        question_text=text,
        input_type=input_type,
        input_config=input_config,
        position=Position(start_y=start_y, end_y=min(1.0, start_y + 0.05)),
    )


def _router_run(*, subject=Subject.MATH, agent_id=AgentId.MATH_EXERCISE, content_type=ContentType.EXERCISES):
    decision = RoutingDecision(
        subject=subject,
        content_type=content_type,
        grade_level=GradeLevel.HIGH_SCHOOL,
        confidence=0.9,
        agent_id=agent_id,
    )
    return RouterRun(decision=decision, model="gemini-2.5-flash", attempts=1)
