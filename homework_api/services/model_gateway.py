from __future__ import annotations

import importlib.util
import json
import random
import time
from dataclasses import dataclass, replace
from enum import Enum

import httpx

from homework_api.config import (
    get_gateway_backoff_base_seconds,
    get_gateway_http_timeout_seconds,
    get_gateway_max_jitter_seconds,
    get_gateway_max_retries,
    get_gemini_api_key,
    get_gemini_base_url,
    get_gemini_fallback_model,
    get_gemini_model,
)
from homework_api.errors import (
    ConfigurationError,
    ContentDecodingError,
    FatalTransportError,
    RequestTimeoutError,
    TransientTransportError,
)
from homework_api.logging_config import get_logger
from homework_api.services.output_repair import repair_model_output

logger = get_logger(__name__)

_TRANSIENT_STATUS_FLOOR = 500
_TRANSIENT_REQUEST_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
_DEFAULT_MAX_OUTPUT_TOKENS = 8192
_RAW_EXCERPT_CHARS = 500


class AttemptState(str, Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_FATAL = "failed_fatal"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-request retry budget. ``deadline`` is a ``time.monotonic()`` instant."""

    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    max_jitter_seconds: float = 1.0
    deadline: float | None = None

    @classmethod
    def from_config(cls) -> RetryPolicy:
        return cls(
            max_retries=get_gateway_max_retries(),
            backoff_base_seconds=get_gateway_backoff_base_seconds(),
            max_jitter_seconds=get_gateway_max_jitter_seconds(),
        )

    def with_timeout(self, seconds: float) -> RetryPolicy:
        return replace(self, deadline=time.monotonic() + seconds)

    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def backoff_delay(self, attempt: int) -> float:
        jitter = random.uniform(0, min(1.0, self.max_jitter_seconds))
        return self.backoff_base_seconds * (2 ** (attempt - 1)) + jitter


@dataclass(frozen=True)
class GatewaySettings:
    api_key: str
    base_url: str
    model: str
    fallback_model: str | None = None
    http_timeout_seconds: float = 90.0

    @classmethod
    def from_config(cls, *, model: str | None = None) -> GatewaySettings:
        api_key = get_gemini_api_key()
        if not api_key:
            raise ConfigurationError("Server configuration error: GEMINI_API_KEY is not set")
        return cls(
            api_key=api_key,
            base_url=get_gemini_base_url(),
            model=model or get_gemini_model(),
            fallback_model=get_gemini_fallback_model(),
            http_timeout_seconds=get_gateway_http_timeout_seconds(),
        )

    def for_model(self, model: str) -> GatewaySettings:
        return replace(self, model=model)


@dataclass(frozen=True)
class GatewayResult:
    data: object
    model: str
    attempts: int


def build_text_part(text: str) -> dict:
    return {"text": text}


def build_image_part(*, image_base64: str, mime_type: str) -> dict:
    return {"inlineData": {"mimeType": mime_type, "data": image_base64}}


def invoke_model(
    *,
    prompt: str,
    schema: dict,
    parts: list[dict],
    settings: GatewaySettings,
    policy: RetryPolicy,
    temperature: float = 0.2,
    max_output_tokens: int = _DEFAULT_MAX_OUTPUT_TOKENS,
    thinking_budget: int | None = None,
    client: httpx.Client | None = None,
) -> GatewayResult:
    """Call the model once per attempt and return the repaired, parsed JSON output.

    Transient transport failures are retried with exponential backoff up to
    ``policy.max_retries`` attempts per model. Decoding failures are surfaced
    immediately; they are content errors, not transport errors.
    """
    if client is None:
        with create_gemini_http_client(timeout=settings.http_timeout_seconds) as managed_client:
            return invoke_model(
                prompt=prompt,
                schema=schema,
                parts=parts,
                settings=settings,
                policy=policy,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                thinking_budget=thinking_budget,
                client=managed_client,
            )

    attempts_used = 0
    transient_failure: _TransientModelFailure | None = None
    attempted_models: list[str] = []
    for model_candidate in _build_model_candidates(settings):
        payload = {
            "contents": [{"role": "user", "parts": [build_text_part(prompt), *parts]}],
            "generationConfig": _build_generation_config(
                model=model_candidate,
                schema=schema,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                thinking_budget=thinking_budget,
            ),
        }
        try:
            data, attempts = _invoke_model_with_retries(
                payload=payload,
                model=model_candidate,
                settings=settings,
                policy=policy,
                client=client,
            )
        except _TransientModelFailure as exc:
            transient_failure = exc
            attempts_used += exc.attempts
            attempted_models.append(model_candidate)
            continue
        except (FatalTransportError, ContentDecodingError, RequestTimeoutError) as exc:
            exc.attempts += attempts_used
            raise
        return GatewayResult(data=data, model=model_candidate, attempts=attempts_used + attempts)

    if transient_failure is None:
        raise FatalTransportError("No model configured for the gateway")
    logger.error(
        "model gateway gave up after %d attempts (models: %s, last_status=%s)",
        attempts_used,
        ", ".join(attempted_models),
        transient_failure.last_status,
    )
    raise TransientTransportError(
        model=", ".join(attempted_models),
        attempts=attempts_used,
        last_status=transient_failure.last_status,
        detail=transient_failure.last_error,
    ) from transient_failure


def _invoke_model_with_retries(
    *,
    payload: dict,
    model: str,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client,
) -> tuple[object, int]:
    url = f"{settings.base_url.rstrip('/')}/models/{model}:generateContent"
    last_status: int | None = None
    last_error: str | None = None
    max_attempts = max(1, policy.max_retries)

    for attempt in range(1, max_attempts + 1):
        timeout = _resolve_attempt_timeout(policy=policy, settings=settings, completed_attempts=attempt - 1)
        logger.debug("model=%s attempt=%d/%d state=%s", model, attempt, max_attempts, AttemptState.ATTEMPTING.value)
        try:
            response = client.post(
                url,
                headers={
                    "x-goog-api-key": settings.api_key,
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=timeout,
            )
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            state = classify_transport_failure(exc)
            status_code = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            if state is AttemptState.FAILED_FATAL:
                logger.error("model=%s attempt=%d state=%s error=%s", model, attempt, state.value, exc)
                raise FatalTransportError(
                    f"Model request failed: {_describe_failure(exc)}",
                    upstream_status=status_code,
                    attempts=attempt,
                ) from exc
            last_status = status_code if status_code is not None else last_status
            last_error = _describe_failure(exc)
            logger.warning("model=%s attempt=%d state=%s error=%s", model, attempt, state.value, last_error)
            if attempt >= max_attempts:
                break
            _sleep_before_retry(policy=policy, attempt=attempt, completed_attempts=attempt)
            continue

        data = _decode_response(response, model=model, attempts=attempt)
        logger.info("model=%s attempt=%d state=%s", model, attempt, AttemptState.SUCCEEDED.value)
        return data, attempt

    raise _TransientModelFailure(model=model, attempts=max_attempts, last_status=last_status, last_error=last_error)


def classify_transport_failure(exc: Exception) -> AttemptState:
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code >= _TRANSIENT_STATUS_FLOOR:
            return AttemptState.FAILED_TRANSIENT
        return AttemptState.FAILED_FATAL
    if isinstance(exc, _TRANSIENT_REQUEST_ERRORS):
        return AttemptState.FAILED_TRANSIENT
    return AttemptState.FAILED_FATAL


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _resolve_attempt_timeout(*, policy: RetryPolicy, settings: GatewaySettings, completed_attempts: int) -> float:
    remaining = policy.remaining_seconds()
    if remaining is None:
        return settings.http_timeout_seconds
    if remaining <= 0:
        raise RequestTimeoutError(
            "Request deadline exceeded before the model call could complete",
            attempts=completed_attempts,
        )
    return min(settings.http_timeout_seconds, remaining)


def _sleep_before_retry(*, policy: RetryPolicy, attempt: int, completed_attempts: int) -> None:
    delay = policy.backoff_delay(attempt)
    remaining = policy.remaining_seconds()
    if remaining is not None and delay >= remaining:
        raise RequestTimeoutError(
            "Request deadline exceeded while waiting to retry the model call",
            attempts=completed_attempts,
        )
    logger.info("retrying model call in %.2fs (attempt %d failed)", delay, attempt)
    time.sleep(delay)


def _decode_response(response: httpx.Response, *, model: str, attempts: int) -> object:
    try:
        body = response.json()
    except ValueError as exc:
        raise ContentDecodingError(
            f"Model endpoint returned a non-JSON body (model={model})",
            raw_excerpt=response.text[:_RAW_EXCERPT_CHARS],
            attempts=attempts,
        ) from exc

    text = _extract_candidate_text(body, model=model, attempts=attempts)
    repaired = repair_model_output(text)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        logger.error(
            "model=%s output failed to parse after repair: %s | excerpt=%s",
            model,
            exc,
            repaired[:_RAW_EXCERPT_CHARS],
        )
        raise ContentDecodingError(
            f"Model output is not valid JSON after repair: {exc.msg} (line {exc.lineno}, column {exc.colno})",
            raw_excerpt=text[:_RAW_EXCERPT_CHARS],
            attempts=attempts,
        ) from exc


def _extract_candidate_text(body: object, *, model: str, attempts: int) -> str:
    candidates = body.get("candidates") if isinstance(body, dict) else None
    if not isinstance(candidates, list) or not candidates:
        raise ContentDecodingError(
            f"Model returned no candidates (model={model}); possible safety block",
            attempts=attempts,
        )

    candidate = candidates[0] if isinstance(candidates[0], dict) else {}
    finish_reason = str(candidate.get("finishReason") or "STOP").upper()
    if finish_reason == "SAFETY":
        raise ContentDecodingError("Model response blocked by safety filters", attempts=attempts)
    if finish_reason == "MAX_TOKENS":
        logger.warning("model=%s response truncated at max tokens; repair will close open structures", model)
    elif finish_reason != "STOP":
        logger.warning("model=%s non-standard finish reason: %s", model, finish_reason)

    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if isinstance(parts, list):
        for part in parts:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text.strip()
    raise ContentDecodingError(f"Model returned empty response text (model={model})", attempts=attempts)


def _build_model_candidates(settings: GatewaySettings) -> list[str]:
    candidates: list[str] = []
    primary = settings.model.strip()
    if primary:
        candidates.append(primary)
    fallback = (settings.fallback_model or "").strip()
    if fallback and fallback not in candidates:
        candidates.append(fallback)
    return candidates


def create_gemini_http_client(*, timeout: float = 90.0) -> httpx.Client:
    return httpx.Client(
        timeout=timeout,
        http2=importlib.util.find_spec("h2") is not None,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
    )


def _build_generation_config(
    *,
    model: str,
    schema: dict,
    temperature: float,
    max_output_tokens: int,
    thinking_budget: int | None,
) -> dict:
    generation_config: dict = {
        "temperature": temperature,
        "responseMimeType": "application/json",
        "responseSchema": schema,
        "candidateCount": 1,
        "maxOutputTokens": _clamp_int(max_output_tokens, lower=256, upper=8192),
    }

    if thinking_budget is not None and _should_include_thinking_budget(model):
        generation_config["thinkingConfig"] = {
            "thinkingBudget": _clamp_int(thinking_budget, lower=0, upper=24576),
        }

    return generation_config


def _should_include_thinking_budget(model: str) -> bool:
    model_name = model.strip().lower()
    return "2.5" in model_name and "flash" in model_name


def _clamp_int(value: int, *, lower: int, upper: int) -> int:
    parsed = int(value)
    if parsed < lower:
        return lower
    if parsed > upper:
        return upper
    return parsed


class _TransientModelFailure(RuntimeError):
    def __init__(self, *, model: str, attempts: int, last_status: int | None, last_error: str | None):
        status_label = str(last_status) if last_status is not None else "request-error"
        super().__init__(f"model={model}, attempts={attempts}, last_status={status_label}")
        self.model = model
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error
