from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import ValidationError

from homework_api.config import get_attestation_header, get_gemini_router_model
from homework_api.errors import HomeworkAnalysisError, InputValidationError
from homework_api.schemas.homework import HomeworkAnalysisRequest
from homework_api.services.analysis_pipeline import analyze_homework
from homework_api.services.attestation import verify_attestation_token
from homework_api.services.model_gateway import GatewaySettings

router = APIRouter(prefix="/homework", tags=["homework"])

_FIELD_LABELS = {
    "image": "image",
    "imageBase64": "image",
    "ocrFragments": "ocrFragments",
    "ocrBlocks": "ocrFragments",
    "ocr_fragments": "ocrFragments",
}


@router.post("/analyze")
def analyze_homework_page(request: Request, payload: Any = Body(default=None)) -> dict:
    try:
        # Checked in this order, before any model call.
        verify_attestation_token(request.headers.get(get_attestation_header()))
        analysis_request = parse_analysis_request(payload)
        settings = GatewaySettings.from_config()
        envelope = analyze_homework(
            analysis_request,
            settings=settings,
            router_settings=settings.for_model(get_gemini_router_model()),
        )
    except HomeworkAnalysisError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    return envelope.to_response()


def parse_analysis_request(payload: Any) -> HomeworkAnalysisRequest:
    if not isinstance(payload, dict):
        raise InputValidationError("Request body must be a JSON object")
    try:
        return HomeworkAnalysisRequest.model_validate(payload)
    except ValidationError as exc:
        raise InputValidationError(describe_validation_error(exc)) from exc


def describe_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = [str(part) for part in first.get("loc", ())]
    field = _FIELD_LABELS.get(location[0], location[0]) if location else "body"
    path = ".".join([field, *location[1:]])
    return f"Missing or invalid {path}: {first.get('msg', 'invalid value')}"
