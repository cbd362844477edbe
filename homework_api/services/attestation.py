"""Opaque pass/fail gate for the client attestation token.

Token signature validation belongs to the attestation provider; this service
only requires a non-empty token.
"""

from __future__ import annotations

from homework_api.errors import AttestationError
from homework_api.logging_config import get_logger

logger = get_logger(__name__)


def verify_attestation_token(token: str | None) -> None:
    cleaned = (token or "").strip()
    if not cleaned:
        logger.warning("request rejected: missing attestation token")
        raise AttestationError("Unauthorized: attestation token required")

    logger.debug("attestation token received: %s...", cleaned[:8])
