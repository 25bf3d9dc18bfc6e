"""
services/ai/categorizer.py
Gemini-backed job categorisation and the booking assistant.

Model calls go through the `gemini` circuit breaker, retry transient
failures with tenacity, and are bounded by AI_TIMEOUT_SECONDS.
`analyze_job` never fails for a non-empty description: any model problem
falls back to the local keyword table.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import google.generativeai as genai
from fastapi.concurrency import run_in_threadpool
from google.api_core import exceptions as google_exceptions
from pybreaker import CircuitBreakerError

from config.settings import settings
from shared.exceptions import ExternalServiceError, ValidationError
from shared.utils.resilience import circuit_breaker_manager, transient_retry

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "Przepraszam, mam chwilowe problemy z połączeniem. Spróbuj ponownie! 🔄"

ACTION_TYPES = {
    "UPDATE_PRICE",
    "UPDATE_CATEGORY",
    "UPDATE_URGENCY",
    "PUBLISH_JOB",
    "SELECT_PROFESSIONAL",
    "OPEN_BOOKING",
    "CANCEL_JOB",
    "NONE",
}

ANALYZE_PROMPT = """Jesteś ekspertem od kategoryzacji usług domowych w Polsce.

Analiza opisu zlecenia - zwróć JSON z następującymi polami:
- category: jedna z kategorii: "Hydraulik", "Elektryk", "Sprzątanie", "Złota Rączka", "Inne"
- title: krótki tytuł zlecenia (max 50 znaków)
- tags: tablica 2-4 tagów opisujących problem
- priceMin: minimalna szacunkowa cena w PLN
- priceMax: maksymalna szacunkowa cena w PLN
- urgency: "low", "medium" lub "high"
- confidence: pewność od 0.0 do 1.0

Wskazówki cenowe:
- Hydraulik: 80-300 PLN (większe awarie do 500)
- Elektryk: 100-400 PLN
- Sprzątanie: 50-200 PLN
- Złota Rączka: 60-250 PLN

Odpowiedz TYLKO prawidłowym JSON-em, bez dodatkowego tekstu."""

ASSISTANT_PROMPT = """Jesteś asystentem aplikacji FachowcyNow - platformy łączącej klientów z fachowcami.

TWOJA OSOBOWOŚĆ:
- Miły, pomocny, profesjonalny
- Używasz emoji z umiarem
- Odpowiadasz po polsku
- Jesteś konkretny i rzeczowy

TWOJE MOŻLIWOŚCI:
1. Analizowanie opisów problemów i kategoryzowanie
2. Szacowanie i modyfikowanie kosztów usług
3. Pomaganie w publikacji zleceń
4. Rezerwowanie fachowców

AKCJE:
- UPDATE_PRICE: zmiana ceny, payload {"min": liczba, "max": liczba}
- UPDATE_CATEGORY: zmiana kategorii, payload {"category": tekst}
- UPDATE_URGENCY: pilność, payload {"urgency": "asap" | "today" | "week" | "flexible"}
- PUBLISH_JOB: użytkownik potwierdza publikację zlecenia
- SELECT_PROFESSIONAL: wybór fachowca, payload {"proId": tekst, "proName": tekst}
- OPEN_BOOKING: rezerwacja wizyty, payload {"proId": tekst}
- CANCEL_JOB: anulowanie
- NONE: brak akcji

OGRANICZENIA:
- NIE odpowiadaj na tematy niezwiązane z aplikacją
- Grzecznie odmów pytań osobistych/politycznych/medycznych

FORMAT ODPOWIEDZI (ZAWSZE JSON):
{"message": "odpowiedź dla użytkownika", "action": {"type": "NAZWA_AKCJI lub NONE", "payload": {}}}"""

ANALYSIS_DEFAULTS = {
    "category": "Złota Rączka",
    "title": "Usługa domowa",
    "tags": ["naprawa"],
    "price_min": 60.0,
    "price_max": 180.0,
    "urgency": "medium",
    "confidence": 0.7,
}

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


# ── Local fallback ────────────────────────────────────────────

_FALLBACK_RULES = [
    (
        re.compile(r"kran|rura|wod|ciek|hydraul|toalet|umywalk|prysznic|wanna|zlew|kanalizac|spłuczk"),
        {
            "category": "Hydraulik",
            "title": "Naprawa instalacji wodnej",
            "tags": ["hydraulika", "naprawa", "woda"],
            "price_min": 80.0,
            "price_max": 200.0,
            "confidence": 0.85,
        },
        lambda text: "high" if ("pilne" in text or "zalew" in text) else "medium",
    ),
    (
        re.compile(r"prąd|gniazdko|elektr|lampa|światło|kabel|bezpiecznik|kontakt|włącznik"),
        {
            "category": "Elektryk",
            "title": "Usługa elektryczna",
            "tags": ["elektryka", "instalacja", "prąd"],
            "price_min": 100.0,
            "price_max": 300.0,
            "confidence": 0.82,
        },
        lambda text: "high" if "brak prądu" in text else "medium",
    ),
    (
        re.compile(r"sprząt|czysto|myci|odkurz|pranie|piorę|brud|porządek"),
        {
            "category": "Sprzątanie",
            "title": "Usługa sprzątania",
            "tags": ["sprzątanie", "czystość", "dom"],
            "price_min": 50.0,
            "price_max": 150.0,
            "confidence": 0.80,
        },
        lambda text: "low",
    ),
]

_FALLBACK_DEFAULT = {
    "category": "Złota Rączka",
    "title": "Naprawa domowa",
    "tags": ["naprawa", "dom", "złota rączka"],
    "price_min": 60.0,
    "price_max": 180.0,
    "urgency": "medium",
    "confidence": 0.60,
}


def local_analyze_job(description: str) -> Dict[str, Any]:
    """Keyword categorisation used whenever the model is unavailable."""
    text = description.lower()
    for pattern, result, urgency in _FALLBACK_RULES:
        if pattern.search(text):
            return {**result, "tags": list(result["tags"]), "urgency": urgency(text), "source": "fallback"}
    return {**_FALLBACK_DEFAULT, "tags": list(_FALLBACK_DEFAULT["tags"]), "source": "fallback"}


def _number(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number or default


def parse_analysis(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model reply and fill in defaults."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None

    tags = parsed.get("tags")
    return {
        "category": parsed.get("category") or ANALYSIS_DEFAULTS["category"],
        "title": parsed.get("title") or ANALYSIS_DEFAULTS["title"],
        "tags": [str(t) for t in tags] if isinstance(tags, list) else list(ANALYSIS_DEFAULTS["tags"]),
        "price_min": _number(parsed.get("priceMin"), ANALYSIS_DEFAULTS["price_min"]),
        "price_max": _number(parsed.get("priceMax"), ANALYSIS_DEFAULTS["price_max"]),
        "urgency": parsed.get("urgency") or ANALYSIS_DEFAULTS["urgency"],
        "confidence": _number(parsed.get("confidence"), ANALYSIS_DEFAULTS["confidence"]),
        "source": "ai",
    }


# ── Gemini ────────────────────────────────────────────────────

_TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.ResourceExhausted,
    ConnectionError,
    TimeoutError,
)


@transient_retry(*_TRANSIENT_ERRORS)
def _call_gemini(prompt: str, generation_config: Optional[dict] = None) -> str:
    genai.configure(api_key=settings.GEMINI_API_KEY)
    model = genai.GenerativeModel(settings.GEMINI_MODEL, generation_config=generation_config)
    response = model.generate_content(
        prompt,
        request_options={"timeout": settings.AI_TIMEOUT_SECONDS},
    )
    return (response.text or "").strip()


async def generate(prompt: str, generation_config: Optional[dict] = None) -> str:
    """One guarded Gemini call. Raises ExternalServiceError on any failure."""
    if not settings.GEMINI_API_KEY:
        raise ExternalServiceError("gemini", "Gemini API key is not configured")

    breaker = circuit_breaker_manager.get_breaker("gemini")
    try:
        return await asyncio.wait_for(
            run_in_threadpool(breaker.call, _call_gemini, prompt, generation_config),
            timeout=settings.AI_TIMEOUT_SECONDS * 2,
        )
    except CircuitBreakerError as e:
        raise ExternalServiceError("gemini", "AI service temporarily unavailable") from e
    except Exception as e:
        logger.warning(f"Gemini call failed: {type(e).__name__}: {e}")
        raise ExternalServiceError("gemini", "AI request failed", {"error": str(e)}) from e


async def analyze_job(description: str) -> Dict[str, Any]:
    if not description or not description.strip():
        raise ValidationError("Job description is required")

    try:
        text = await generate(f'{ANALYZE_PROMPT}\n\nOpis zlecenia: "{description}"')
    except ExternalServiceError:
        return local_analyze_job(description)

    analysis = parse_analysis(text)
    if analysis is None:
        logger.info("Gemini reply had no usable JSON, using keyword fallback")
        return local_analyze_job(description)
    return analysis


# ── Assistant ─────────────────────────────────────────────────

def build_context_prompt(context: Dict[str, Any]) -> str:
    lines = ["", "", "## AKTUALNY KONTEKST ZLECENIA:"]
    if context.get("job_description"):
        lines.append(f'Opis problemu: "{context["job_description"]}"')
    if context.get("category"):
        lines.append(f"Kategoria: {context['category']}")
    price_range = context.get("price_range")
    if price_range:
        lines.append(f"Aktualna cena: {price_range['min']}-{price_range['max']} zł")
    professionals = context.get("professionals") or []
    if professionals:
        lines.append("")
        lines.append("Dostępni fachowcy:")
        for i, pro in enumerate(professionals, start=1):
            lines.append(
                f"{i}. {pro.get('name')} (ID: {pro.get('id')}) - {pro.get('profession')}, "
                f"Ocena: {pro.get('rating')}/5, Cena: {pro.get('price')} zł, Odległość: {pro.get('distance')} km"
            )
    selected = context.get("selected_professional")
    if selected:
        lines.append(f"Wybrany fachowiec: {selected.get('name')}")
    if context.get("address"):
        lines.append(f"Lokalizacja: {context['address']}")
    if context.get("current_state"):
        lines.append(f"Stan procesu: {context['current_state']}")
    return "\n".join(lines)


def _normalize_action(action: Any) -> Dict[str, Any]:
    if not isinstance(action, dict):
        return {"type": "NONE", "payload": {}}
    action_type = str(action.get("type") or "NONE").upper()
    if action_type not in ACTION_TYPES:
        action_type = "NONE"
    payload = action.get("payload")
    return {"type": action_type, "payload": payload if isinstance(payload, dict) else {}}


async def assistant_chat(message: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Returns {response, action: {type, payload}, success}. Never raises on model failure."""
    prompt = (
        f"{ASSISTANT_PROMPT}{build_context_prompt(context or {})}"
        f'\n\n## Wiadomość użytkownika:\n"{message}"\n\nOdpowiedz TYLKO poprawnym JSON:'
    )
    try:
        text = await generate(prompt, {
            "temperature": 0.3,
            "max_output_tokens": 500,
            "response_mime_type": "application/json",
        })
    except ExternalServiceError as e:
        logger.error(f"Assistant chat failed: {e.message}")
        return {"response": APOLOGY_MESSAGE, "action": {"type": "NONE", "payload": {}}, "success": False}

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if not isinstance(parsed, dict):
        return {"response": text, "action": {"type": "NONE", "payload": {}}, "success": True}

    return {
        "response": str(parsed.get("message") or ""),
        "action": _normalize_action(parsed.get("action")),
        "success": True,
    }
