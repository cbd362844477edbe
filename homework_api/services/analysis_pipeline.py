from __future__ import annotations

import time

import httpx

from homework_api.config import get_gemini_router_model, get_request_timeout_seconds
from homework_api.errors import HomeworkAnalysisError
from homework_api.logging_config import get_logger
from homework_api.schemas.analysis import AnalysisEnvelope
from homework_api.schemas.homework import HomeworkAnalysisRequest
from homework_api.services.agents import AgentContext, run_agent
from homework_api.services.aggregator import assemble
from homework_api.services.document_router import classify
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy, create_gemini_http_client

logger = get_logger(__name__)


def analyze_homework(
    request: HomeworkAnalysisRequest,
    *,
    settings: GatewaySettings | None = None,
    router_settings: GatewaySettings | None = None,
    policy: RetryPolicy | None = None,
    client: httpx.Client | None = None,
) -> AnalysisEnvelope:
    """Router, then exactly one extraction agent, then the aggregator.

    One HTTP client is shared by both model calls and closed when the request
    finishes. The retry policy carries the request deadline.
    """
    if settings is None:
        settings = GatewaySettings.from_config()
        router_settings = router_settings or settings.for_model(get_gemini_router_model())
    if router_settings is None:
        router_settings = settings
    if policy is None:
        policy = RetryPolicy.from_config().with_timeout(get_request_timeout_seconds())

    if client is None:
        with create_gemini_http_client(timeout=settings.http_timeout_seconds) as managed_client:
            return analyze_homework(
                request,
                settings=settings,
                router_settings=router_settings,
                policy=policy,
                client=managed_client,
            )

    started_at = time.monotonic()
    fragments = tuple(request.ocr_fragments)
    mime_type = request.resolved_mime_type
    logger.info(
        "analysis started: %d OCR fragments, image %dKB, preferences=%s",
        len(fragments),
        len(request.image_base64) // 1024,
        request.preferences is not None,
    )

    try:
        router_run = classify(
            image_base64=request.image_base64,
            mime_type=mime_type,
            ocr_fragments=fragments,
            preferences=request.preferences,
            settings=router_settings,
            policy=policy,
            client=client,
        )
        context = AgentContext(
            image_base64=request.image_base64,
            mime_type=mime_type,
            ocr_fragments=fragments,
            routing=router_run.decision,
            preferences=request.preferences,
        )
        payload = run_agent(router_run.decision.agent_id, context, settings=settings, policy=policy, client=client)
    except HomeworkAnalysisError as exc:
        logger.error(
            "analysis failed after %dms: %s (%s)",
            int((time.monotonic() - started_at) * 1000),
            exc.message,
            type(exc).__name__,
        )
        raise

    envelope = assemble(router_run, payload, processing_time_ms=int((time.monotonic() - started_at) * 1000))
    logger.info(
        "analysis complete in %dms: subject=%s agent=%s exercises=%d excluded=%d",
        envelope.metadata.processing_time_ms,
        envelope.routing.subject.value,
        envelope.routing.agent_id.value,
        len(envelope.exercises),
        envelope.metadata.excluded_exercise_count,
    )
    return envelope
