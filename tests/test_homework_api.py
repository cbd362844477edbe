import json

import httpx
import pytest
from fastapi.testclient import TestClient

from homework_api.main import app
from homework_api.services import analysis_pipeline
from homework_api.services import model_gateway as gateway

HEADERS = {"X-Firebase-AppCheck": "device-token"}
ROUTER_OUTPUT = {"subject": "Math", "contentType": "exercises", "gradeLevel": "MiddleSchool", "confidence": 0.93}
MATH_OUTPUT = {
    "exercises": [
        {
            "exerciseNumber": "2",
            "questionText": "2. Solve 3x = 9",
            "inputType": "math_canvas",
            "position": {"startY": 0.3, "endY": 0.35},
        },
        {
            "exerciseNumber": "1",
            "questionText": "1. Solve 2+2=?",
            "inputType": "math_canvas",
        },
    ]
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setenv("GEMINI_MODEL", "gemini-2.5-flash")
    monkeypatch.delenv("GEMINI_ROUTER_MODEL", raising=False)
    monkeypatch.delenv("GEMINI_FALLBACK_MODEL", raising=False)
    monkeypatch.setattr(gateway.time, "sleep", lambda _seconds: None)
    return TestClient(app)


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "homework-analysis-api"}


def test_analyze_returns_sorted_envelope(client, monkeypatch):
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT if _is_router(prompt) else MATH_OUTPUT)

    response = client.post("/homework/analyze", headers=HEADERS, json=_request_body())

    assert response.status_code == 200
    body = response.json()
    assert body["routing"]["subject"] == "Math"
    assert body["routing"]["agentId"] == "math_exercise_agent"
    exercises = body["analysis"]["exercises"]
    assert [exercise["number"] for exercise in exercises] == ["1", "2"]
    assert exercises[0]["position"] == {"startY": 0.1, "endY": 0.15}
    assert exercises[0]["inputType"] == "math_canvas"
    assert body["metadata"]["agentsInvoked"] == ["router_agent", "math_exercise_agent"]
    assert body["metadata"]["partial"] is False
    assert len(calls) == 2


def test_analyze_requires_attestation_header(client, monkeypatch):
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT)

    response = client.post("/homework/analyze", json=_request_body())

    assert response.status_code == 401
    assert response.json()["detail"] == "Unauthorized: attestation token required"
    assert calls == []


def test_analyze_reports_missing_api_key(client, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT)

    response = client.post("/homework/analyze", headers=HEADERS, json=_request_body())

    assert response.status_code == 500
    assert "GEMINI_API_KEY" in response.json()["detail"]
    assert calls == []


def test_analyze_rejects_missing_ocr_fragments_without_model_calls(client, monkeypatch):
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT)
    body = _request_body()
    del body["ocrFragments"]

    response = client.post("/homework/analyze", headers=HEADERS, json=body)

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Missing or invalid ocrFragments")
    assert calls == []


def test_analyze_rejects_bad_body_before_checking_api_key(client, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT)
    body = _request_body()
    del body["ocrFragments"]

    response = client.post("/homework/analyze", headers=HEADERS, json=body)

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Missing or invalid ocrFragments")
    assert calls == []


def test_analyze_rejects_invalid_image(client, monkeypatch):
    calls = _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT)
    body = _request_body()
    body["image"] = "not base64!!"

    response = client.post("/homework/analyze", headers=HEADERS, json=body)

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Missing or invalid image")
    assert calls == []


def test_analyze_rejects_malformed_json(client):
    response = client.post(
        "/homework/analyze",
        headers={**HEADERS, "Content-Type": "application/json"},
        content=b'{"image": ',
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Request body must be valid JSON"}


def test_analyze_maps_exhausted_retries_to_503(client, monkeypatch):
    monkeypatch.setenv("GATEWAY_MAX_RETRIES", "2")
    calls: list[str] = []

    def post(url: str, payload: dict) -> httpx.Response:
        del payload
        calls.append(url)
        return httpx.Response(status_code=503, request=httpx.Request("POST", url), json={"error": "unavailable"})

    monkeypatch.setattr(analysis_pipeline, "create_gemini_http_client", lambda **_kwargs: _FakeClient(post))

    response = client.post("/homework/analyze", headers=HEADERS, json=_request_body())

    assert response.status_code == 503
    assert "attempts=2" in response.json()["detail"]
    assert len(calls) == 2


def test_analyze_maps_agent_failures_to_502(client, monkeypatch):
    _install_fake_model(monkeypatch, lambda prompt: ROUTER_OUTPUT if _is_router(prompt) else {"unexpected": True})

    response = client.post("/homework/analyze", headers=HEADERS, json=_request_body())

    assert response.status_code == 502
    assert response.json()["detail"].startswith("math_exercise_agent")


def _request_body() -> dict:
    return {
        "image": "aGVsbG8=",
        "ocrFragments": [
            {"text": "1. Solve 2+2=?", "startY": 0.10, "endY": 0.15},
            {"text": "2. Solve 3x = 9", "startY": 0.30, "endY": 0.35},
        ],
    }


def _is_router(prompt: str) -> bool:
    return prompt.startswith("You are a homework classification expert")


def _install_fake_model(monkeypatch, output_for_prompt) -> list[str]:
    calls: list[str] = []

    def post(url: str, payload: dict) -> httpx.Response:
        prompt = payload["contents"][0]["parts"][0]["text"]
        calls.append(prompt)
        text = json.dumps(output_for_prompt(prompt))
        body = {"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": text}]}}]}
        return httpx.Response(status_code=200, request=httpx.Request("POST", url), json=body)

    monkeypatch.setattr(analysis_pipeline, "create_gemini_http_client", lambda **_kwargs: _FakeClient(post))
    return calls


class _FakeClient:
    def __init__(self, post):
        self._post = post

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        del exc_type, exc, tb
        return False

    def post(self, url: str, headers: dict, json: dict, timeout: float | None = None) -> httpx.Response:
        del headers, timeout
        return self._post(url, json)
