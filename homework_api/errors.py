"""Error taxonomy for the analysis pipeline.

Every error carries the HTTP status the request handler maps it to. Only the
handler translates these into responses; services raise and propagate them.
"""

from __future__ import annotations


class HomeworkAnalysisError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(HomeworkAnalysisError):
    status_code = 400


class AttestationError(HomeworkAnalysisError):
    status_code = 401


class ConfigurationError(HomeworkAnalysisError):
    status_code = 500


class GatewayError(HomeworkAnalysisError):
    status_code = 502


class TransientTransportError(GatewayError):
    """Retry budget exhausted on timeouts, connection failures or upstream 5xx."""

    status_code = 503

    def __init__(self, *, model: str, attempts: int, last_status: int | None, detail: str | None = None):
        status_label = str(last_status) if last_status is not None else "request-error"
        message = f"model={model}, attempts={attempts}, last_status={status_label}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.model = model
        self.attempts = attempts
        self.last_status = last_status


class FatalTransportError(GatewayError):
    """Non-retryable upstream failure (4xx, malformed request)."""

    def __init__(self, message: str, *, upstream_status: int | None = None, attempts: int = 1):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.attempts = attempts


class ContentDecodingError(GatewayError):
    """HTTP succeeded but the model output could not be decoded, even after repair."""

    def __init__(self, message: str, *, raw_excerpt: str | None = None, attempts: int = 1):
        super().__init__(message)
        self.raw_excerpt = raw_excerpt
        self.attempts = attempts


class RequestTimeoutError(HomeworkAnalysisError):
    status_code = 504

    def __init__(self, message: str, *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ClassificationError(HomeworkAnalysisError):
    status_code = 502


class AgentError(HomeworkAnalysisError):
    status_code = 502

    def __init__(self, message: str, *, agent_id: str):
        super().__init__(f"{agent_id}: {message}")
        self.agent_id = agent_id


class SchemaMismatchError(ValueError):
    """Valid JSON that lacks a required semantic field. Handled per exercise."""
