from __future__ import annotations

import logging
import os

import httpx

logger = logging.getLogger("migrainegauge.gemini")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL_FAST = os.getenv("GEMINI_MODEL_FAST", "gemini-2.5-flash")
GEMINI_MODEL_STRONG = os.getenv("GEMINI_MODEL_STRONG", "gemini-2.5-pro")

BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


def is_configured() -> bool:
    return bool(GEMINI_API_KEY) and not GEMINI_API_KEY.startswith("your-")


def _api_url(model: str) -> str:
    return f"{BASE_URL}/{model}:generateContent?key={GEMINI_API_KEY}"


async def _call_gemini(model: str, system: str, prompt: str, max_tokens: int = 4096) -> str:
    if not is_configured():
        raise RuntimeError("GEMINI_API_KEY not configured")

    payload = {
        "systemInstruction": {"parts": [{"text": system}]},
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": 0.2,
            "maxOutputTokens": max_tokens,
            "responseMimeType": "application/json",
        },
    }

    async with httpx.AsyncClient(timeout=60.0) as client:
        resp = await client.post(_api_url(model), json=payload)
        resp.raise_for_status()
        data = resp.json()

    candidates = data.get("candidates", [])
    if not candidates:
        raise ValueError("No candidates returned from Gemini")
    content = candidates[0].get("content", {})
    text_parts = [p.get("text", "") for p in content.get("parts", [])]
    text = "".join(text_parts)
    logger.debug("Gemini %s returned %d chars", model, len(text))
    return text


CLINICAL_SYSTEM = """You are a headache neurologist reviewing a migraine patient's intake.
You receive their questionnaire profile, the trigger and prodrome severities already
assigned by deterministic rules (LOCKED floor ratings), the labels available in their
pools, and which data sources are connected.

Your job is to refine the ratings from clinical knowledge:
- You may RAISE a severity (NONE < LOW < MILD < HIGH). You may never lower a locked rating.
- You may activate a label that is not yet rated, but only from the available pools.
- Flag data gaps that will make the gauge less reliable.

Respond with valid JSON matching this strict schema:
{
  "clinical_assessment": "3-5 sentence narrative for the patient",
  "summary": "one sentence",
  "trigger_adjustments": [
    {"label": string, "from": "NONE"|"LOW"|"MILD"|"HIGH", "to": "LOW"|"MILD"|"HIGH", "reasoning": string}
  ],
  "prodrome_adjustments": [
    {"label": string, "from": "NONE"|"LOW"|"MILD"|"HIGH", "to": "LOW"|"MILD"|"HIGH", "reasoning": string}
  ],
  "favorite_adjustments": [
    {"label": string, "type": "trigger"|"prodrome", "favorite": true|false, "reasoning": string}
  ],
  "profile_updates": [
    {"field": string, "from": string, "to": string, "reasoning": string}
  ],
  "data_warnings": [
    {"type": string, "message": string, "metric": string}
  ]
}

Only output the JSON object, nothing else."""


STATISTICAL_SYSTEM = """You are a biostatistician calibrating a migraine risk gauge.
The gauge score for a day is the sum over logged triggers/prodromes of
decay[severity][days since the event], for days 0..6. The score is then compared
to zone thresholds LOW < MILD < HIGH.

You receive how many active triggers fall in each bucket (auto-detected vs
manually logged, by severity), prodrome counts, the current thresholds and decay
table, optional hit/miss statistics, and a clinician's narrative for context.

Rules:
- Thresholds must be strictly increasing: low < mild < high.
- Decay rows must be non-negative and should not increase with age.
- Auto-detected triggers fire every day their metric crosses a threshold, so many
  auto triggers need higher thresholds or faster decay than manual ones.

Respond with valid JSON matching this strict schema:
{
  "gauge_thresholds": {"low": number, "mild": number, "high": number, "reasoning": string},
  "decay_weights": [
    {"severity": "HIGH"|"MILD"|"LOW", "day0": number, "day1": number, "day2": number,
     "day3": number, "day4": number, "day5": number, "day6": number, "reasoning": string}
  ],
  "calibration_notes": "short narrative for the patient",
  "summary": "one sentence"
}

Only output the JSON object, nothing else."""


async def clinical_pass(message: str) -> str:
    """Call 1: narrative assessment and severity elevations."""
    return await _call_gemini(GEMINI_MODEL_STRONG, CLINICAL_SYSTEM, message)


async def statistical_pass(message: str) -> str:
    """Call 2: gauge thresholds and decay weights."""
    return await _call_gemini(GEMINI_MODEL_FAST, STATISTICAL_SYSTEM, message, max_tokens=2048)
