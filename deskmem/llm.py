"""
Text generation client.

The core talks to a `TextGenerator`; the shipped implementation speaks the
OpenAI-compatible chat-completions API over httpx with per-call timeouts,
bounded retry with jittered backoff, and a circuit breaker.
"""

from __future__ import annotations

import json
import random
import threading
import time
from typing import Any, Optional, Protocol, Sequence

import httpx

import deskmem.config as config
from deskmem.config import logger
from deskmem.errors import ExternalServiceError

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class TextGenerator(Protocol):
    def summarize(self, messages: Sequence[dict], customer_meta: dict, tenant_meta: dict) -> str:
        ...

    def generate_profile(self, customer_meta: dict, summaries: Sequence[str], tenant_meta: dict) -> dict:
        ...

    def generate_response(self, message: str, context: dict) -> str:
        ...

    def classify(self, text: str, context: Optional[dict] = None) -> dict:
        ...


class CircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


llm_circuit_breaker = CircuitBreaker(
    failure_threshold=config.LLM_FAILURE_THRESHOLD,
    cooldown_seconds=config.LLM_COOLDOWN_SECONDS,
)


def format_transcript(messages: Sequence[dict], max_chars: int) -> str:
    lines = []
    for message in messages:
        timestamp = message.get("timestamp")
        stamp = timestamp.strftime("%Y-%m-%d %H:%M") if hasattr(timestamp, "strftime") else str(timestamp or "")
        speaker = "Customer" if message.get("role") == "customer" else "Agent"
        lines.append(f"[{stamp}] {speaker}: {message.get('content', '')}")
    transcript = "\n".join(lines)
    if len(transcript) > max_chars:
        # keep the most recent part of the period
        transcript = transcript[-max_chars:]
    return transcript


def _parse_json_reply(reply: str, what: str) -> dict:
    text = reply.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise ExternalServiceError(f"{what} reply was not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ExternalServiceError(f"{what} reply was not a JSON object")
    return parsed


SUMMARY_SYSTEM_PROMPT = (
    "You summarize customer-support conversations, extracting insights that "
    "improve the relationship with the customer."
)

SUMMARY_PROMPT = """COMPANY:
Name: {tenant_name}
Domain: {tenant_domain}

CUSTOMER:
Name: {customer_name}
Contact: {customer_contact}

CONVERSATIONS ({message_count} messages):
{transcript}

Write a structured summary with these sections:
CUSTOMER SUMMARY (name, period, total interactions), MAIN TOPICS,
PREFERENCES, BEHAVIOR PATTERN, ISSUE HISTORY (resolved and pending),
RECOMMENDATIONS FOR NEXT INTERACTIONS.
Be concise and focus on what helps future interactions."""

PROFILE_SYSTEM_PROMPT = "You analyze customer profiles. Always answer with valid JSON."

PROFILE_PROMPT = """COMPANY:
Name: {tenant_name}
Domain: {tenant_domain}

CUSTOMER:
Name: {customer_name}
Current tags: {customer_tags}
Current summary: {customer_summary}

SUMMARY HISTORY:
{summaries}

Build an updated customer profile. Answer ONLY with JSON of this shape:
{{"profile": {{"personality_type": "", "preferences": [], "behavior_pattern": "",
"communication_style": "", "frequency": "", "topics": []}},
"summary": "", "tags": [], "insights": [], "recommendations": []}}"""

CLASSIFY_SYSTEM_PROMPT = "You categorize customer-support messages. Always answer with valid JSON."

CLASSIFY_PROMPT = """COMPANY: {tenant_name}
CUSTOMER: {customer_name}

MESSAGE:
"{text}"

Categories: sales, support, delivery, billing, feedback, general.
Priorities: low, normal, high, urgent.
Answer ONLY with JSON:
{{"category": "", "priority": "", "confidence": 0.0, "tags": [], "sentiment": "positive|negative|neutral"}}"""


class OpenAITextGenerator:
    """TextGenerator backed by an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        retry_max: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model or config.LLM_MODEL
        self.retry_max = config.LLM_RETRY_MAX if retry_max is None else retry_max
        self.backoff_seconds = config.LLM_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.jitter_seconds = config.LLM_RETRY_JITTER_SECONDS if jitter_seconds is None else jitter_seconds
        self.circuit_breaker = circuit_breaker or llm_circuit_breaker

        headers = {"Content-Type": "application/json"}
        key = api_key if api_key is not None else config.LLM_API_KEY
        if key:
            headers["Authorization"] = f"Bearer {key}"
        timeout = config.LLM_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._client = httpx.Client(
            base_url=base_url or config.LLM_BASE_URL,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_seconds * (2 ** attempt)
        jitter = random.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        delay = base + jitter
        if delay > 0:
            time.sleep(delay)

    def _unavailable(self, detail: str) -> ExternalServiceError:
        self.circuit_breaker.record_failure(detail)
        logger.warning("Text generation unavailable", extra={"detail": detail, "model": self.model})
        return ExternalServiceError(f"text generation unavailable: {detail}")

    def _chat(self, system_prompt: str, prompt: str, max_tokens: int, temperature: float) -> str:
        if self.circuit_breaker.is_open():
            raise ExternalServiceError("text generation unavailable: circuit breaker open")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        for attempt in range(self.retry_max + 1):
            try:
                response = self._client.post("/chat/completions", json=payload)
            except httpx.RequestError as exc:
                if attempt >= self.retry_max:
                    raise self._unavailable(type(exc).__name__) from exc
                self._sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUSES:
                if attempt >= self.retry_max:
                    raise self._unavailable(f"status {response.status_code}")
                self._sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                raise self._unavailable(f"status {response.status_code}")

            try:
                content = response.json()["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as exc:
                raise self._unavailable("malformed completion payload") from exc
            self.circuit_breaker.record_success()
            return content or ""
        raise self._unavailable("retries exhausted")

    def summarize(self, messages: Sequence[dict], customer_meta: dict, tenant_meta: dict) -> str:
        contact = customer_meta.get("contact") or {}
        prompt = SUMMARY_PROMPT.format(
            tenant_name=tenant_meta.get("name", ""),
            tenant_domain=tenant_meta.get("domain") or "N/A",
            customer_name=customer_meta.get("name") or customer_meta.get("id", ""),
            customer_contact=contact.get("whatsapp") or contact.get("email") or "N/A",
            message_count=len(messages),
            transcript=format_transcript(messages, config.LLM_MAX_TRANSCRIPT_CHARS),
        )
        text = self._chat(SUMMARY_SYSTEM_PROMPT, prompt, config.LLM_SUMMARY_MAX_TOKENS, 0.7).strip()
        if not text:
            raise ExternalServiceError("text generation returned an empty summary")
        return text

    def generate_profile(self, customer_meta: dict, summaries: Sequence[str], tenant_meta: dict) -> dict:
        prompt = PROFILE_PROMPT.format(
            tenant_name=tenant_meta.get("name", ""),
            tenant_domain=tenant_meta.get("domain") or "N/A",
            customer_name=customer_meta.get("name") or customer_meta.get("id", ""),
            customer_tags=", ".join(customer_meta.get("tags") or []) or "none",
            customer_summary=customer_meta.get("summary") or "not available",
            summaries="\n\n".join(summaries) or "no summaries available",
        )
        reply = self._chat(PROFILE_SYSTEM_PROMPT, prompt, config.LLM_PROFILE_MAX_TOKENS, 0.3)
        return _parse_json_reply(reply, "profile")

    def generate_response(self, message: str, context: dict) -> str:
        tenant = context.get("tenant") or {}
        system_prompt = (
            f"You are an experienced support agent for {tenant.get('name', 'the company')}. "
            "Stay professional and friendly, and use the customer context to personalize answers."
        )
        if tenant.get("custom_prompt"):
            system_prompt = f"{system_prompt}\n\n{tenant['custom_prompt']}"
        prompt = json.dumps({"context": context, "message": message}, default=str)
        return self._chat(system_prompt, prompt, config.LLM_RESPONSE_MAX_TOKENS, 0.7)

    def classify(self, text: str, context: Optional[dict] = None) -> dict:
        context = context or {}
        prompt = CLASSIFY_PROMPT.format(
            tenant_name=context.get("tenant_name") or "N/A",
            customer_name=context.get("customer_name") or "N/A",
            text=text,
        )
        reply = self._chat(CLASSIFY_SYSTEM_PROMPT, prompt, config.LLM_CLASSIFY_MAX_TOKENS, 0.1)
        return _parse_json_reply(reply, "classification")


def build_text_generator() -> Optional[TextGenerator]:
    if config.LLM_PROVIDER == "none":
        return None
    return OpenAITextGenerator()


__all__ = [
    "TextGenerator",
    "OpenAITextGenerator",
    "CircuitBreaker",
    "llm_circuit_breaker",
    "build_text_generator",
    "format_transcript",
]
