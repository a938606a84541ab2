"""
Rule-based conversation categorization.

`classify` is the synchronous hot-path classifier: a fixed, ordered keyword
table, no I/O. `enrich` may consult the text generator for ambiguous results
and always degrades to the rule-based answer.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Optional

import deskmem.config as config
from deskmem.config import logger
from deskmem.errors import ExternalServiceError
from deskmem.llm import TextGenerator
from deskmem.models import Priority

GENERAL_CATEGORY = "general"
GENERAL_SUBJECT = "General conversation"

# Ordered: the first group with a hit names the category.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sales", ("buy", "purchas", "price", "cost", "quote", "comprar", "compra", "preco", "valor", "orcamento")),
    ("support", ("help", "problem", "broken", "not working", "error", "issue", "support",
                 "ajuda", "problema", "suporte", "quebrad", "defeito", "erro")),
    ("delivery", ("deliver", "shipping", "shipment", "order", "tracking",
                  "entrega", "envio", "pedido", "rastreio")),
    ("billing", ("payment", "pay", "billing", "invoice", "refund", "charge",
                 "pagamento", "pagar", "cobranca", "boleto", "fatura", "reembolso")),
    ("feedback", ("feedback", "complain", "review", "opinion", "suggestion",
                  "reclamacao", "elogio", "opiniao", "sugestao")),
)

EXTRA_TAG_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("question", ("question", "doubt", "duvida", "pergunta")),
    ("scheduling", ("schedule", "appointment", "booking", "agendamento", "agendar", "horario", "consulta")),
    ("compliment", ("compliment", "praise", "thank", "elogio", "parabens", "obrigad")),
)

URGENT_KEYWORDS = ("urgent", "emergency", "asap", "immediately", "critical",
                   "urgente", "emergencia", "imediat", "critico")
INFORMATIONAL_KEYWORDS = ("info", "question", "how", "duvida", "informacao", "como")

POSITIVE_KEYWORDS = ("thank", "great", "excellent", "perfect", "love", "happy", "satisf", "awesome",
                     "obrigad", "otimo", "excelente", "perfeito", "adorei", "feliz", "parabens")
NEGATIVE_KEYWORDS = ("broken", "terrible", "horrible", "awful", "angry", "disappoint", "worst",
                     "complain", "not working", "problem", "pessim", "horrivel", "ruim",
                     "reclamacao", "problema", "defeito", "quebrad", "decepcion")

CHANNEL_MENTIONS = (
    ("whatsapp", ("whatsapp", "wpp", "zap")),
    ("instagram", ("instagram", "insta")),
)

CATEGORIES = tuple(label for label, _ in CATEGORY_KEYWORDS) + (GENERAL_CATEGORY,)
SENTIMENTS = ("positive", "negative", "neutral")


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def _compile(keywords: tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf"\b(?:{alternatives})")


def _compile_table(table):
    return tuple((label, _compile(keywords)) for label, keywords in table)


_CATEGORY_PATTERNS = _compile_table(CATEGORY_KEYWORDS)
_EXTRA_TAG_PATTERNS = _compile_table(EXTRA_TAG_KEYWORDS)
_CHANNEL_PATTERNS = _compile_table(CHANNEL_MENTIONS)
_URGENT_PATTERN = _compile(URGENT_KEYWORDS)
_INFORMATIONAL_PATTERN = _compile(INFORMATIONAL_KEYWORDS)
_POSITIVE_PATTERN = _compile(POSITIVE_KEYWORDS)
_NEGATIVE_PATTERN = _compile(NEGATIVE_KEYWORDS)


@dataclass
class Classification:
    category: str
    priority: str
    tags: list[str] = field(default_factory=list)
    sentiment: str = "neutral"
    confidence: float = 0.3
    subject: str = GENERAL_SUBJECT
    source: str = "rules"

    def to_dict(self) -> dict:
        return asdict(self)


def merge_tags(existing, incoming) -> list[str]:
    """Order-preserving set union."""
    merged: list[str] = []
    for tag in list(existing or []) + list(incoming or []):
        if tag not in merged:
            merged.append(tag)
    return merged


def extract_subject(text: str, max_length: Optional[int] = None) -> str:
    max_length = max_length or config.SUBJECT_MAX_LENGTH
    collapsed = " ".join((text or "").split())
    if len(collapsed) < 10:
        return GENERAL_SUBJECT
    if len(collapsed) <= max_length:
        return collapsed
    return collapsed[:max_length].rstrip() + "..."


def _sentiment(normalized: str) -> str:
    positive = len(_POSITIVE_PATTERN.findall(normalized))
    negative = len(_NEGATIVE_PATTERN.findall(normalized))
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def _platform_tag(platform: Optional[str]) -> Optional[str]:
    if not platform:
        return None
    tag = normalize_text(platform).replace(" ", "_")
    return tag or None


def classify(text: str, platform: Optional[str] = None) -> Classification:
    """Classify one message deterministically."""
    normalized = normalize_text(text)

    category = GENERAL_CATEGORY
    tags: list[str] = []
    keyword_hits = 0
    for label, pattern in _CATEGORY_PATTERNS:
        hits = set(pattern.findall(normalized))
        if not hits:
            continue
        keyword_hits += len(hits)
        tags.append(label)
        if category == GENERAL_CATEGORY:
            category = label

    for label, pattern in _EXTRA_TAG_PATTERNS:
        if pattern.search(normalized):
            tags.append(label)

    escalated = bool(_URGENT_PATTERN.search(normalized))
    if escalated:
        priority = Priority.high.value
    elif _INFORMATIONAL_PATTERN.search(normalized):
        priority = Priority.low.value
    else:
        priority = Priority.normal.value

    channel = _platform_tag(platform)
    if channel:
        tags.append(channel)
    for label, pattern in _CHANNEL_PATTERNS:
        if pattern.search(normalized):
            tags.append(label)
    if escalated:
        tags.append("urgent")

    tags = merge_tags([], tags) or [GENERAL_CATEGORY]

    if category == GENERAL_CATEGORY:
        confidence = 0.3
    else:
        confidence = min(0.95, round(0.6 + 0.1 * max(0, keyword_hits - 1), 2))

    return Classification(
        category=category,
        priority=priority,
        tags=tags,
        sentiment=_sentiment(normalized),
        confidence=confidence,
        subject=extract_subject(text),
    )


class Categorizer:
    """Wraps `classify` with optional LLM enrichment for ambiguous messages."""

    def __init__(self, text_generator: Optional[TextGenerator] = None, fallback_threshold: Optional[float] = None):
        self.text_generator = text_generator
        self.fallback_threshold = (
            config.CLASSIFY_LLM_FALLBACK_THRESHOLD if fallback_threshold is None else fallback_threshold
        )

    def classify(self, text: str, platform: Optional[str] = None) -> Classification:
        return classify(text, platform=platform)

    def is_ambiguous(self, result: Classification) -> bool:
        return result.category == GENERAL_CATEGORY or result.confidence < self.fallback_threshold

    def enrich(self, text: str, platform: Optional[str] = None, context: Optional[dict] = None) -> Classification:
        result = classify(text, platform=platform)
        if self.text_generator is None or not self.is_ambiguous(result):
            return result

        try:
            reply = self.text_generator.classify(text, context or {})
        except ExternalServiceError as exc:
            logger.warning("LLM classification unavailable, keeping rule result", extra={"error": str(exc)})
            return result

        category = reply.get("category") if isinstance(reply, dict) else None
        if category not in CATEGORIES or category == GENERAL_CATEGORY:
            return result

        priority = reply.get("priority")
        if priority not in {item.value for item in Priority}:
            priority = result.priority
        sentiment = reply.get("sentiment")
        if sentiment not in SENTIMENTS:
            sentiment = result.sentiment
        try:
            confidence = float(reply.get("confidence", result.confidence))
        except (TypeError, ValueError):
            confidence = result.confidence
        confidence = max(0.0, min(1.0, confidence))

        llm_tags = [tag for tag in reply.get("tags") or [] if isinstance(tag, str) and tag.strip()]
        base_tags = [tag for tag in result.tags if tag != GENERAL_CATEGORY]
        return Classification(
            category=category,
            priority=priority,
            tags=merge_tags(base_tags, [category] + [normalize_text(tag) for tag in llm_tags]),
            sentiment=sentiment,
            confidence=confidence,
            subject=result.subject,
            source="llm",
        )
