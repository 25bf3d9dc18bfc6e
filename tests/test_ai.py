"""
tests/test_ai.py
Tests for job categorisation and the assistant. Gemini itself is never
called; `_call_gemini` is replaced per test.
"""

import json
import time

import pytest
from httpx import AsyncClient

from config.settings import settings
from services.ai import categorizer
from shared.exceptions import ValidationError
from shared.models.models import User
from shared.utils.resilience import circuit_breaker_manager
from tests.conftest import auth_headers


@pytest.fixture(autouse=True)
def gemini(monkeypatch):
    circuit_breaker_manager.breakers.clear()
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "test-gemini-key")
    monkeypatch.setattr(settings, "AI_TIMEOUT_SECONDS", 0.2)
    yield
    circuit_breaker_manager.breakers.clear()


def reply_with(monkeypatch, text):
    calls = []

    def fake_call(prompt, generation_config=None):
        calls.append(prompt)
        return text

    monkeypatch.setattr(categorizer, "_call_gemini", fake_call)
    return calls


def fail_with(monkeypatch, exc):
    def fake_call(prompt, generation_config=None):
        raise exc

    monkeypatch.setattr(categorizer, "_call_gemini", fake_call)


# ── Parsing and fallback ───────────────────────────────────────────────────────

def test_parse_analysis_extracts_json_from_chatter():
    """JSON embedded in model chatter is parsed and normalised."""
    text = 'Oto wynik: {"category": "Elektryk", "title": "Gniazdko", "priceMin": 120, "priceMax": "250"} dzięki'
    analysis = categorizer.parse_analysis(text)
    assert analysis["category"] == "Elektryk"
    assert analysis["price_min"] == 120.0
    assert analysis["price_max"] == 250.0
    assert analysis["tags"] == ["naprawa"]
    assert analysis["source"] == "ai"


def test_parse_analysis_without_json():
    """Replies with no usable JSON give None."""
    assert categorizer.parse_analysis("Nie wiem") is None
    assert categorizer.parse_analysis("{nie json}") is None


@pytest.mark.parametrize(
    "description, category, urgency",
    [
        ("Cieknie kran w kuchni", "Hydraulik", "medium"),
        ("Pilne! Pękła rura w łazience", "Hydraulik", "high"),
        ("Brak prądu w całym mieszkaniu", "Elektryk", "high"),
        ("Sprzątanie po remoncie", "Sprzątanie", "low"),
        ("Powiesić półkę", "Złota Rączka", "medium"),
    ],
)
def test_local_analyze_job(description, category, urgency):
    """Keyword fallback picks category and urgency from Polish descriptions."""
    result = categorizer.local_analyze_job(description)
    assert result["category"] == category
    assert result["urgency"] == urgency
    assert result["source"] == "fallback"


# ── analyze_job ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_analyze_job_uses_model_reply(monkeypatch):
    """A valid model reply is returned as the analysis."""
    calls = reply_with(monkeypatch, json.dumps({
        "category": "Hydraulik", "title": "Wymiana uszczelki", "tags": ["kran"],
        "priceMin": 90, "priceMax": 180, "urgency": "medium", "confidence": 0.9,
    }))
    result = await categorizer.analyze_job("Cieknie kran w kuchni")
    assert result["source"] == "ai"
    assert result["title"] == "Wymiana uszczelki"
    assert "Cieknie kran w kuchni" in calls[0]


@pytest.mark.asyncio
async def test_analyze_job_times_out_to_fallback(monkeypatch):
    """A slow model call falls back to keyword analysis."""
    def slow_call(prompt, generation_config=None):
        time.sleep(1)
        return "{}"

    monkeypatch.setattr(categorizer, "_call_gemini", slow_call)
    result = await categorizer.analyze_job("Cieknie kran w kuchni")
    assert result["category"] == "Hydraulik"
    assert result["source"] == "fallback"


@pytest.mark.asyncio
async def test_analyze_job_model_error_falls_back(monkeypatch):
    """Model errors fall back to keyword analysis."""
    fail_with(monkeypatch, RuntimeError("quota"))
    result = await categorizer.analyze_job("Nie działa gniazdko w salonie")
    assert result["category"] == "Elektryk"


@pytest.mark.asyncio
async def test_analyze_job_without_api_key_falls_back(monkeypatch):
    """Without an API key the model is never called."""
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "")
    result = await categorizer.analyze_job("Umyć okna")
    assert result["source"] == "fallback"


@pytest.mark.asyncio
async def test_analyze_job_empty_description():
    """Blank descriptions are rejected."""
    with pytest.raises(ValidationError):
        await categorizer.analyze_job("   ")


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_to_fallback(monkeypatch):
    """Once the breaker opens the model is skipped entirely."""
    fail_with(monkeypatch, RuntimeError("down"))
    breaker = circuit_breaker_manager.get_breaker("gemini")
    for _ in range(breaker.fail_max):
        await categorizer.analyze_job("Cieknie kran")
    assert breaker.current_state == "open"

    calls = reply_with(monkeypatch, '{"category": "Elektryk"}')
    result = await categorizer.analyze_job("Cieknie kran")
    assert result["source"] == "fallback"
    assert calls == []


# ── Assistant ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_assistant_normalizes_action(monkeypatch):
    """Action types are upper-cased and payloads kept."""
    reply_with(monkeypatch, json.dumps({
        "message": "Podniosłem cenę",
        "action": {"type": "update_price", "payload": {"min": 150, "max": 300}},
    }))
    result = await categorizer.assistant_chat("Zapłacę więcej")
    assert result == {
        "response": "Podniosłem cenę",
        "action": {"type": "UPDATE_PRICE", "payload": {"min": 150, "max": 300}},
        "success": True,
    }


@pytest.mark.asyncio
async def test_assistant_unknown_action_becomes_none(monkeypatch):
    """Unknown actions are replaced with NONE."""
    reply_with(monkeypatch, json.dumps({"message": "OK", "action": {"type": "LAUNCH_ROCKET"}}))
    result = await categorizer.assistant_chat("Hej")
    assert result["action"] == {"type": "NONE", "payload": {}}


@pytest.mark.asyncio
async def test_assistant_apologizes_on_failure(monkeypatch):
    """Model failure yields the apology message."""
    fail_with(monkeypatch, RuntimeError("down"))
    result = await categorizer.assistant_chat("Hej")
    assert result["response"] == categorizer.APOLOGY_MESSAGE
    assert result["success"] is False


def test_context_prompt_lists_professionals():
    """The context prompt includes the job, price range and nearby professionals."""
    prompt = categorizer.build_context_prompt({
        "job_description": "Cieknie kran",
        "price_range": {"min": 100, "max": 200},
        "professionals": [{"id": "p1", "name": "Jan", "profession": "Hydraulik", "rating": 4.8, "price": 150, "distance": 1.2}],
    })
    assert 'Opis problemu: "Cieknie kran"' in prompt
    assert "Aktualna cena: 100-200 zł" in prompt
    assert "1. Jan (ID: p1) - Hydraulik" in prompt


# ── HTTP ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_analyze_endpoint(client: AsyncClient, client_user: User, monkeypatch):
    """POST /ai/analyze-job returns a category even when the model is down."""
    fail_with(monkeypatch, RuntimeError("down"))
    response = await client.post(
        "/ai/analyze-job", headers=auth_headers(client_user), json={"description": "Cieknie kran w kuchni"}
    )
    assert response.status_code == 200
    assert response.json()["category"] == "Hydraulik"


@pytest.mark.asyncio
async def test_analyze_endpoint_empty_description(client: AsyncClient, client_user: User):
    """POST /ai/analyze-job rejects an empty description."""
    response = await client.post("/ai/analyze-job", headers=auth_headers(client_user), json={"description": ""})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_chat_endpoint(client: AsyncClient, client_user: User, monkeypatch):
    """POST /ai/chat returns the assistant's action."""
    reply_with(monkeypatch, json.dumps({"message": "Publikuję", "action": {"type": "PUBLISH_JOB", "payload": {}}}))
    response = await client.post(
        "/ai/chat",
        headers=auth_headers(client_user),
        json={"message": "Opublikuj", "context": {"category": "Hydraulik"}},
    )
    assert response.status_code == 200
    assert response.json()["action"]["type"] == "PUBLISH_JOB"
