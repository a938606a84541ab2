import os
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from deskmem.errors import NotFoundError
from deskmem.models import Conversation, ConversationState, ConversationSummary, Customer, Tenant
from deskmem.services.context_assembler import (
    ContextAssembler,
    assess_quality,
    average_response_seconds,
    quality_tier,
    sentiment_trend,
)
from deskmem.services.conversations import ConversationStore


def _populate_profile(db_session, customer_id):
    customer = db_session.get(Customer, customer_id)
    customer.summary = "Long-time customer who buys monthly"
    customer.profile = {"communication_style": "direct"}
    customer.tags = ["delivery", "delivery", "billing"]
    customer.recommendations = ["offer express shipping"]
    db_session.commit()


def _add_summaries(db_session, customer_id, periods):
    for period in periods:
        db_session.add(
            ConversationSummary(
                tenant_id="acme",
                customer_id=customer_id,
                period_key=period,
                summary_text=f"Talked about delivery in {period}",
                message_count=3,
                conversation_count=1,
            )
        )
    db_session.commit()


def _ingest(store, clock, customer_id, contents, role="customer", step=timedelta(minutes=1)):
    for content in contents:
        clock.set(clock.now() + step)
        store.ingest_message("acme", customer_id, {"role": role, "content": content, "platform": "whatsapp"})


def test_empty_customer_has_limited_context(session_factory, clock, customer):
    context = ContextAssembler(session_factory, clock).build_context("acme", customer)
    assert context.quality.score == 0
    assert context.quality.tier == "limited"
    assert context.recent_messages == []
    assert context.summaries == []
    assert context.tenant["id"] == "acme"


def test_rich_customer_has_excellent_context(session_factory, clock, customer, db_session):
    _populate_profile(db_session, customer)
    _add_summaries(db_session, customer, ["2024-02", "2024-03"])
    store = ConversationStore(session_factory, clock)
    _ingest(store, clock, customer, [f"message {index}" for index in range(6)])

    context = ContextAssembler(session_factory, clock, conversation_store=store).build_context("acme", customer)

    assert context.quality.score == 100
    assert context.quality.tier == "excellent"
    assert len(context.recent_messages) == 6
    assert [summary["period_key"] for summary in context.summaries] == ["2024-03", "2024-02"]


def test_recent_messages_are_bounded_and_chronological(session_factory, clock, customer):
    store = ConversationStore(session_factory, clock)
    _ingest(store, clock, customer, [f"message {index}" for index in range(8)])

    context = ContextAssembler(session_factory, clock).build_context("acme", customer, recent_message_limit=3)

    assert [message["content"] for message in context.recent_messages] == ["message 5", "message 6", "message 7"]


def test_archived_messages_never_reach_context(session_factory, clock, customer, db_session):
    store = ConversationStore(session_factory, clock)
    _ingest(store, clock, customer, ["old news"])
    db_session.query(Conversation).update({Conversation.state: ConversationState.archived})
    db_session.commit()
    _ingest(store, clock, customer, ["fresh question"])

    context = ContextAssembler(session_factory, clock).build_context("acme", customer)
    assert [message["content"] for message in context.recent_messages] == ["fresh question"]


def test_summary_limit_zero_skips_summaries(session_factory, clock, customer, db_session):
    _add_summaries(db_session, customer, ["2024-01"])
    context = ContextAssembler(session_factory, clock).build_context("acme", customer, summary_limit=0)
    assert context.summaries == []


def test_unknown_customer_is_not_found(session_factory, clock, tenant):
    with pytest.raises(NotFoundError):
        ContextAssembler(session_factory, clock).build_context("acme", "ghost")


def test_quality_helpers():
    assert quality_tier(100) == "excellent"
    assert quality_tier(75) == "excellent"
    assert quality_tier(50) == "good"
    assert quality_tier(25) == "fair"
    assert quality_tier(0) == "limited"
    quality = assess_quality({"summary": "x", "profile": {}}, [], [{"id": 1}])
    assert quality.score == 50
    assert quality.signals == {
        "profile_summary": True,
        "structured_profile": False,
        "recent_messages": False,
        "summaries": True,
    }


def test_response_mode_respects_tenant_settings(session_factory, clock, customer, db_session):
    _populate_profile(db_session, customer)
    assembler = ContextAssembler(session_factory, clock)

    context = assembler.build_context("acme", customer)
    assert context.quality.score == 50
    assert assembler.decide_response_mode(context) == "auto"

    tenant = db_session.get(Tenant, "acme")
    tenant.settings = {"min_context_score": 75}
    db_session.commit()
    assert assembler.decide_response_mode(context) == "escalate"

    tenant.settings = {"auto_response": False}
    db_session.commit()
    assert assembler.decide_response_mode(context) == "escalate"


def test_draft_response_uses_generator_when_context_allows(session_factory, clock, text_generator, customer, db_session):
    _populate_profile(db_session, customer)
    assembler = ContextAssembler(session_factory, clock, text_generator=text_generator)

    result = assembler.draft_response("acme", customer, "Where is my order?")

    assert result["mode"] == "auto"
    assert result["response"] == "Reply to: Where is my order?"
    assert result["classification"]["category"] == "delivery"
    _, context = text_generator.response_calls[0]
    assert context["profile"]["summary"] == "Long-time customer who buys monthly"


def test_draft_response_escalates_on_poor_context_or_generator_failure(
    session_factory, clock, text_generator, customer, db_session
):
    assembler = ContextAssembler(session_factory, clock, text_generator=text_generator)
    assert assembler.draft_response("acme", customer, "hello")["mode"] == "escalate"
    assert text_generator.response_calls == []

    _populate_profile(db_session, customer)
    text_generator.fail_response = True
    result = assembler.draft_response("acme", customer, "hello")
    assert result["mode"] == "escalate"
    assert result["response"] is None

    no_generator = ContextAssembler(session_factory, clock)
    assert no_generator.draft_response("acme", customer, "hello")["mode"] == "escalate"


def test_customer_insights(session_factory, clock, customer, db_session):
    _populate_profile(db_session, customer)
    store = ConversationStore(session_factory, clock)
    _ingest(store, clock, customer, ["Thank you, great service"])
    _ingest(store, clock, customer, ["Glad to help"], role="assistant", step=timedelta(seconds=90))

    insights = ContextAssembler(session_factory, clock, conversation_store=store).customer_insights("acme", customer)

    metrics = insights["metrics"]
    assert metrics["total_interactions"] == 2
    assert metrics["average_response_seconds"] == 90
    assert metrics["most_used_platform"] == "whatsapp"
    assert metrics["sentiment_trend"] == "positive"
    assert metrics["top_topics"][0] == {"tag": "delivery", "count": 2}
    assert insights["recommendations"] == ["offer express shipping"]


def test_find_relevant_history_includes_archived(session_factory, clock, customer, db_session):
    store = ConversationStore(session_factory, clock)
    _ingest(store, clock, customer, ["My refund never arrived"])
    db_session.query(Conversation).update({Conversation.state: ConversationState.archived})
    db_session.commit()
    _add_summaries(db_session, customer, ["2024-01"])

    history = ContextAssembler(session_factory, clock, conversation_store=store).find_relevant_history(
        "acme", customer, "Billing"
    )
    assert len(history["conversations"]) == 1
    assert history["summaries"] == []

    delivery = ContextAssembler(session_factory, clock).find_relevant_history("acme", customer, "delivery")
    assert [item["period_key"] for item in delivery["summaries"]] == ["2024-01"]


def test_message_helpers():
    base = datetime(2024, 5, 1, 10, 0, 0)
    messages = [
        {"role": "customer", "content": "this is terrible", "timestamp": base},
        {"role": "assistant", "content": "sorry", "timestamp": base + timedelta(seconds=30)},
        {"role": "customer", "content": "still broken", "timestamp": base + timedelta(seconds=60)},
        {"role": "assistant", "content": "fixing", "timestamp": base + timedelta(seconds=150)},
    ]
    assert average_response_seconds(messages) == 60
    assert sentiment_trend(messages) == "negative"
    assert sentiment_trend([]) == "unknown"


def test_draft_response_refines_ambiguous_classification(session_factory, clock, text_generator, customer, db_session):
    _populate_profile(db_session, customer)
    text_generator.classify_reply = {"category": "billing", "priority": "normal", "confidence": 0.8, "tags": ["card"]}
    assembler = ContextAssembler(session_factory, clock, text_generator=text_generator)

    result = assembler.draft_response("acme", customer, "something odd happened with my card")

    assert result["classification"]["category"] == "billing"
    assert result["classification"]["source"] == "llm"
    text, context = text_generator.classify_calls[0]
    assert text == "something odd happened with my card"
    assert context["tenant"]["id"] == "acme"

    text_generator.classify_calls.clear()
    clear = assembler.draft_response("acme", customer, "Where is my order?")
    assert clear["classification"]["source"] == "rules"
    assert text_generator.classify_calls == []


@pytest.mark.parametrize("setting, expected", [("oops", "auto"), ([75], "auto"), (True, "auto"), ("75", "escalate")])
def test_response_mode_tolerates_bad_min_context_score(session_factory, clock, customer, db_session, setting, expected):
    _populate_profile(db_session, customer)
    tenant = db_session.get(Tenant, "acme")
    tenant.settings = {"min_context_score": setting}
    db_session.commit()
    assembler = ContextAssembler(session_factory, clock)

    context = assembler.build_context("acme", customer)
    assert context.quality.score == 50
    assert assembler.decide_response_mode(context) == expected
