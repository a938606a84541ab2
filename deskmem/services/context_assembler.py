"""
Bounded context assembly for AI responses.

A context is the customer's profile, the newest messages of their CURRENT
conversations and their most recent period summaries. Archived messages are
never read here; older history reaches the responder only through summaries
and the profile.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

import deskmem.config as config
from deskmem.clock import Clock, default_clock, to_naive_utc
from deskmem.config import logger
from deskmem.errors import ExternalServiceError
from deskmem.llm import TextGenerator
from deskmem.models import Conversation, ConversationState, ConversationSummary, Message
from deskmem.services.categorization import Categorizer, classify
from deskmem.services.conversations import ConversationStore
from deskmem.services.profiles import ProfileRefresher
from deskmem.services.shared import (
    get_customer_or_raise,
    get_tenant_or_raise,
    resolve_session_factory,
    serialize_message,
    serialize_profile,
    serialize_summary,
    serialize_tenant_meta,
    tenant_setting,
)
from deskmem.validators import validate_limit, validate_non_negative, validate_required_text

QUALITY_BUCKET_POINTS = 25
QUALITY_TIERS = ((75, "excellent"), (50, "good"), (25, "fair"))
TOP_TOPICS_LIMIT = 5


@dataclass
class ContextQuality:
    score: int
    tier: str
    signals: dict = field(default_factory=dict)


@dataclass
class Context:
    tenant: dict
    profile: dict
    recent_messages: list[dict]
    summaries: list[dict]
    quality: ContextQuality
    built_at: datetime

    def to_dict(self) -> dict:
        return asdict(self)


def quality_tier(score: int) -> str:
    for threshold, tier in QUALITY_TIERS:
        if score >= threshold:
            return tier
    return "limited"


def assess_quality(profile: dict, recent_messages: list, summaries: list) -> ContextQuality:
    signals = {
        "profile_summary": bool(profile.get("summary")),
        "structured_profile": bool(profile.get("profile")),
        "recent_messages": len(recent_messages) >= config.CONTEXT_MIN_RECENT_MESSAGES,
        "summaries": len(summaries) >= 1,
    }
    score = QUALITY_BUCKET_POINTS * sum(1 for present in signals.values() if present)
    return ContextQuality(score=score, tier=quality_tier(score), signals=signals)


def average_response_seconds(messages: list[dict]) -> Optional[int]:
    """Mean gap between a customer message and the assistant reply right after it."""
    gaps = []
    for previous, current in zip(messages, messages[1:]):
        if previous["role"] == "customer" and current["role"] == "assistant":
            delta = (current["timestamp"] - previous["timestamp"]).total_seconds()
            if delta > 0:
                gaps.append(delta)
    if not gaps:
        return None
    return round(sum(gaps) / len(gaps))


def most_used_platform(messages: list[dict]) -> Optional[str]:
    if not messages:
        return None
    counts = Counter(message.get("platform") or "unknown" for message in messages)
    return counts.most_common(1)[0][0]


def sentiment_trend(messages: list[dict]) -> str:
    sentiments = [classify(message["content"]).sentiment for message in messages if message["role"] == "customer"]
    if not sentiments:
        return "unknown"
    counts = Counter(sentiments)
    positive, negative, neutral = counts["positive"], counts["negative"], counts["neutral"]
    if positive > negative and positive > neutral:
        return "positive"
    if negative > positive and negative > neutral:
        return "negative"
    return "neutral"


def top_topics(tags: list[str], limit: int = TOP_TOPICS_LIMIT) -> list[dict]:
    return [{"tag": tag, "count": count} for tag, count in Counter(tags).most_common(limit)]


def min_context_score(tenant) -> float:
    """Tenant's auto-response threshold; unusable values fall back to the configured default."""
    value = tenant_setting(tenant, "min_context_score", config.MIN_CONTEXT_SCORE_FOR_AUTO)
    if not isinstance(value, bool):
        try:
            return float(value)
        except (TypeError, ValueError):
            pass
    logger.warning(
        "Ignoring invalid min_context_score setting",
        extra={"tenant_id": tenant.id, "setting_type": type(value).__name__},
    )
    return float(config.MIN_CONTEXT_SCORE_FOR_AUTO)


class ContextAssembler:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        clock: Optional[Clock] = None,
        text_generator: Optional[TextGenerator] = None,
        conversation_store: Optional[ConversationStore] = None,
        profile_refresher: Optional[ProfileRefresher] = None,
        categorizer: Optional[Categorizer] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or default_clock
        self.text_generator = text_generator
        self.conversation_store = conversation_store or ConversationStore(session_factory, self.clock)
        self.profile_refresher = profile_refresher or ProfileRefresher(text_generator, session_factory, self.clock)
        self.categorizer = categorizer or Categorizer(text_generator)

    def _session(self):
        return resolve_session_factory(self._session_factory)()

    def build_context(
        self,
        tenant_id: str,
        customer_id: str,
        recent_message_limit: Optional[int] = None,
        summary_limit: Optional[int] = None,
    ) -> Context:
        if recent_message_limit is None:
            recent_message_limit = config.CONTEXT_RECENT_MESSAGE_LIMIT
        if summary_limit is None:
            summary_limit = config.CONTEXT_SUMMARY_LIMIT
        validate_limit(recent_message_limit, "recent_message_limit", config.MAX_RESULT_LIMIT)
        validate_non_negative(summary_limit, "summary_limit", config.MAX_RESULT_LIMIT)

        db = self._session()
        try:
            tenant = get_tenant_or_raise(db, tenant_id)
            customer = get_customer_or_raise(db, tenant_id, customer_id)

            rows = (
                db.query(Message)
                .join(Conversation, Message.conversation_id == Conversation.id)
                .filter(
                    Conversation.tenant_id == tenant_id,
                    Conversation.customer_id == customer_id,
                    Conversation.state == ConversationState.current,
                )
                .order_by(Message.timestamp.desc(), Message.seq.desc())
                .limit(recent_message_limit)
                .all()
            )
            rows.reverse()
            recent_messages = [serialize_message(row) for row in rows]

            summaries = []
            if summary_limit:
                summary_rows = (
                    db.query(ConversationSummary)
                    .filter(
                        ConversationSummary.tenant_id == tenant_id,
                        ConversationSummary.customer_id == customer_id,
                    )
                    .order_by(ConversationSummary.period_key.desc(), ConversationSummary.created_at.desc())
                    .limit(summary_limit)
                    .all()
                )
                summaries = [serialize_summary(row) for row in summary_rows]

            profile = serialize_profile(customer)
            quality = assess_quality(profile, recent_messages, summaries)
            context = Context(
                tenant=serialize_tenant_meta(tenant),
                profile=profile,
                recent_messages=recent_messages,
                summaries=summaries,
                quality=quality,
                built_at=to_naive_utc(self.clock.now()),
            )
            logger.info(
                "Context built",
                extra={
                    "tenant_id": tenant_id,
                    "customer_id": customer_id,
                    "recent_messages": len(recent_messages),
                    "summaries": len(summaries),
                    "quality_score": quality.score,
                },
            )
            return context
        finally:
            db.close()

    def decide_response_mode(self, context: Context) -> str:
        """'auto' when the tenant allows auto-response and the context is good enough, else 'escalate'."""
        db = self._session()
        try:
            tenant = get_tenant_or_raise(db, context.tenant["id"])
            auto_response = bool(tenant_setting(tenant, "auto_response", True))
            min_score = min_context_score(tenant)
        finally:
            db.close()
        if auto_response and context.quality.score >= min_score:
            return "auto"
        return "escalate"

    def draft_response(self, tenant_id: str, customer_id: str, message: str) -> dict:
        """
        Build context, gate on quality, and ask the text generator for a reply
        when the gate allows it. An unavailable generator escalates.
        """
        validate_required_text(message, "message", config.MAX_MESSAGE_LENGTH)
        context = self.build_context(tenant_id, customer_id)
        mode = self.decide_response_mode(context)
        # rule result, refined by the text generator when ambiguous
        classification = self.categorizer.enrich(message, context={"tenant": context.tenant}).to_dict()
        result = {
            "mode": mode,
            "response": None,
            "classification": classification,
            "quality": asdict(context.quality),
            "recent_messages": len(context.recent_messages),
            "summaries": len(context.summaries),
        }
        if mode != "auto" or self.text_generator is None:
            result["mode"] = "escalate"
            return result
        try:
            result["response"] = self.text_generator.generate_response(
                message,
                {
                    "tenant": context.tenant,
                    "profile": context.profile,
                    "recent_messages": [
                        {"role": item["role"], "content": item["content"]} for item in context.recent_messages
                    ],
                    "summaries": [item["summary_text"] for item in context.summaries],
                },
            )
        except ExternalServiceError as exc:
            logger.warning("Response generation unavailable, escalating", extra={"error": str(exc)})
            result["mode"] = "escalate"
        return result

    def customer_insights(self, tenant_id: str, customer_id: str) -> dict:
        context = self.build_context(tenant_id, customer_id)
        messages = context.recent_messages
        return {
            "customer": context.profile,
            "metrics": {
                "total_interactions": len(messages),
                "average_response_seconds": average_response_seconds(messages),
                "most_used_platform": most_used_platform(messages),
                "sentiment_trend": sentiment_trend(messages),
                "top_topics": top_topics(context.profile["tags"]),
            },
            "recommendations": context.profile["recommendations"],
            "quality": asdict(context.quality),
            "built_at": context.built_at.isoformat(),
        }

    def find_relevant_history(self, tenant_id: str, customer_id: str, topic: str) -> dict:
        validate_required_text(topic, "topic", config.MAX_SHORT_TEXT_LENGTH)
        normalized = topic.strip().lower()
        conversations = self.conversation_store.conversations_by_tags(
            tenant_id, customer_id, [normalized], include_archived=True
        )
        summaries = self.profile_refresher.search_summaries(tenant_id, customer_id, normalized)
        return {"topic": topic, "conversations": conversations, "summaries": summaries}
