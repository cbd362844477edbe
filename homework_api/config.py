import os
from pathlib import Path

from dotenv import load_dotenv


_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(_ENV_PATH, override=False)


def _get_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _get_float_env(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int_env(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_gemini_api_key() -> str | None:
    return _get_env("GEMINI_API_KEY")


def get_gemini_base_url() -> str:
    return _get_env("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta"


def get_gemini_model() -> str:
    return _get_env("GEMINI_MODEL") or "gemini-2.5-flash"


def get_gemini_router_model() -> str:
    """Model used for the classification call.

    Falls back to GEMINI_MODEL so a single variable configures both stages.
    """
    return _get_env("GEMINI_ROUTER_MODEL") or get_gemini_model()


def get_gemini_fallback_model() -> str | None:
    return _get_env("GEMINI_FALLBACK_MODEL")


def get_gateway_max_retries() -> int:
    return max(1, _get_int_env("GATEWAY_MAX_RETRIES", 5))


def get_gateway_backoff_base_seconds() -> float:
    return max(0.0, _get_float_env("GATEWAY_BACKOFF_BASE_SECONDS", 1.0))


def get_gateway_max_jitter_seconds() -> float:
    return min(1.0, max(0.0, _get_float_env("GATEWAY_MAX_JITTER_SECONDS", 1.0)))


def get_gateway_http_timeout_seconds() -> float:
    return max(1.0, _get_float_env("GATEWAY_HTTP_TIMEOUT_SECONDS", 90.0))


def get_request_timeout_seconds() -> float:
    return max(1.0, _get_float_env("REQUEST_TIMEOUT_SECONDS", 120.0))


def get_attestation_header() -> str:
    return _get_env("ATTESTATION_HEADER") or "X-Firebase-AppCheck"


def get_cors_allow_origins() -> list[str]:
    raw = _get_env("CORS_ALLOW_ORIGINS") or "http://localhost:3000"
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_log_level() -> str:
    return (_get_env("LOG_LEVEL") or "INFO").upper()
