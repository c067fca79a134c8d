"""Tier-2 semantic classification through an OpenAI-compatible chat endpoint."""

import json
import logging
import time
from typing import Optional

import httpx

from tubemap.circuit_breaker import CircuitBreaker
from tubemap.segments import SEGMENT_CONFIGS, SEGMENT_PRIORITY
from tubemap.states import Segment

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class ClassificationUnavailable(Exception):
    """Tier-2 could not produce a usable answer (disabled, down, slow or nonsense)."""


def build_classification_prompt() -> str:
    segment_lines = "\n".join(
        f"- {s.value}: {SEGMENT_CONFIGS[s].description}" for s in SEGMENT_PRIORITY
    )
    return (
        "You are classifying a customer call for a handyman service. "
        "Based on the transcript, identify the customer segment.\n\n"
        f"SEGMENTS:\n{segment_lines}\n\n"
        "Return ONLY valid JSON:\n"
        '{"segment": "SEGMENT_NAME", "confidence": 0-100, '
        '"signals": ["signal1", "signal2"], "reasoning": "brief explanation"}'
    )


CLASSIFICATION_PROMPT = build_classification_prompt()


def parse_tier2_response(content: str) -> tuple[Segment, int, list[str]]:
    """Validate the model's JSON answer.

    Returns (segment, confidence, signals) with the reasoning folded in as the
    last signal. Raises ClassificationUnavailable for anything unusable.
    """
    try:
        parsed = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise ClassificationUnavailable(f"invalid JSON from model: {e}") from e
    if not isinstance(parsed, dict):
        raise ClassificationUnavailable("model answer is not a JSON object")

    try:
        segment = Segment(str(parsed.get("segment", "")).upper())
    except ValueError:
        raise ClassificationUnavailable(f"unknown segment {parsed.get('segment')!r}") from None

    try:
        confidence = int(round(float(parsed.get("confidence", 0))))
    except (TypeError, ValueError):
        confidence = 0
    confidence = max(0, min(100, confidence))

    raw_signals = parsed.get("signals") or []
    if isinstance(raw_signals, str):
        raw_signals = [raw_signals]
    signals = [str(s) for s in raw_signals if s]
    reasoning = parsed.get("reasoning")
    if reasoning:
        signals.append(f"reasoning: {reasoning}")
    return segment, confidence, signals


class Tier2Classifier:
    """LLM classifier that fails loudly so the caller can fall back to Tier-1."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 2.0,
        url: str = OPENAI_CHAT_URL,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.url = url
        self.breaker = breaker or CircuitBreaker(label="tier2 classifier")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def classify(self, text: str) -> tuple[Segment, int, list[str]]:
        if not self.enabled:
            raise ClassificationUnavailable("no API key configured")
        if not self.breaker.should_try():
            raise ClassificationUnavailable("circuit open")

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "model": self.model,
                        "temperature": 0.1,
                        "max_tokens": 200,
                        "response_format": {"type": "json_object"},
                        "messages": [
                            {"role": "system", "content": CLASSIFICATION_PROMPT},
                            {"role": "user", "content": text},
                        ],
                    },
                )
                resp.raise_for_status()
                content = resp.json()["choices"][0]["message"]["content"]
            result = parse_tier2_response(content)
        except ClassificationUnavailable:
            self.breaker.record_failure()
            raise
        except Exception as e:
            self.breaker.record_failure()
            raise ClassificationUnavailable(f"tier2 request failed: {e}") from e

        self.breaker.record_success()
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug("Tier2 classified %s (%d%%) in %.1fms", result[0].value, result[1], elapsed_ms)
        return result
