import os
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from conftest import seed_customer
from deskmem.audit_constants import EVENT_PROFILE_REFRESHED
from deskmem.errors import ExternalServiceError, NotFoundError
from deskmem.models import AuditEvent, ConversationSummary, Customer
from deskmem.services.profiles import ProfileRefresher, parse_profile_reply


def _add_summary(session_factory, customer_id, period_key, text, message_count=4):
    session = session_factory()
    try:
        session.add(
            ConversationSummary(
                tenant_id="acme",
                customer_id=customer_id,
                period_key=period_key,
                summary_text=text,
                message_count=message_count,
                conversation_count=1,
            )
        )
        session.commit()
    finally:
        session.close()


def _request_refresh(session_factory, customer_id, at):
    session = session_factory()
    try:
        session.query(Customer).filter(Customer.id == customer_id).update(
            {Customer.profile_refresh_requested_at: at}
        )
        session.commit()
    finally:
        session.close()


def test_refresh_rewrites_profile_from_recent_summaries(session_factory, clock, text_generator, customer, db_session):
    for month in range(1, 9):
        _add_summary(session_factory, customer, f"2023-{month:02d}", f"summary {month}")
    refresher = ProfileRefresher(text_generator, session_factory, clock, summary_window=6)

    profile = refresher.refresh("acme", customer)

    assert profile["summary"] == "Customer with 6 summarized periods"
    assert profile["tags"] == ["loyal"]
    assert profile["profile"]["communication_style"] == "direct"
    assert profile["last_profile_update"] == clock.now().isoformat()
    _, summaries, tenant_meta = text_generator.profile_calls[0]
    assert summaries[0] == "[2023-08] summary 8"
    assert summaries[-1] == "[2023-03] summary 3"
    assert tenant_meta["id"] == "acme"

    events = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_PROFILE_REFRESHED).all()
    assert len(events) == 1
    assert events[0].count_affected == 6


def test_refresh_without_summaries_keeps_profile(session_factory, clock, text_generator, customer):
    refresher = ProfileRefresher(text_generator, session_factory, clock)
    profile = refresher.refresh("acme", customer)
    assert profile["summary"] is None
    assert text_generator.profile_calls == []


def test_refresh_unknown_customer(session_factory, clock, text_generator, tenant):
    with pytest.raises(NotFoundError):
        ProfileRefresher(text_generator, session_factory, clock).refresh("acme", "ghost")


def test_drain_clears_marker_after_success(session_factory, clock, text_generator, customer, db_session):
    _add_summary(session_factory, customer, "2024-01", "asked about delivery")
    _request_refresh(session_factory, customer, clock.now() - timedelta(minutes=1))
    refresher = ProfileRefresher(text_generator, session_factory, clock)

    assert refresher.pending("acme") == [("acme", customer)]
    assert refresher.drain("acme") == {"refreshed": 1, "errored": 0}
    assert refresher.pending("acme") == []
    assert db_session.get(Customer, customer).summary == "Customer with 1 summarized periods"


def test_failed_refresh_keeps_marker_for_retry(session_factory, clock, text_generator, customer):
    _add_summary(session_factory, customer, "2024-01", "asked about delivery")
    _request_refresh(session_factory, customer, clock.now())
    text_generator.fail_profile = True
    refresher = ProfileRefresher(text_generator, session_factory, clock)

    assert refresher.drain() == {"refreshed": 0, "errored": 1}
    assert refresher.pending() == [("acme", customer)]

    text_generator.fail_profile = False
    assert refresher.drain() == {"refreshed": 1, "errored": 0}
    assert refresher.pending() == []


def test_marker_set_after_refresh_started_survives(session_factory, clock, text_generator, customer):
    _add_summary(session_factory, customer, "2024-01", "asked about delivery")
    _request_refresh(session_factory, customer, clock.now() + timedelta(seconds=5))
    refresher = ProfileRefresher(text_generator, session_factory, clock)

    refresher.refresh("acme", customer)

    assert refresher.pending() == [("acme", customer)]


def test_summary_statistics_and_search(session_factory, clock, text_generator, customer):
    seed_customer(session_factory, "acme", "cust-2")
    _add_summary(session_factory, customer, "2024-03", "Customer asked for a REFUND of 50%", message_count=5)
    _add_summary(session_factory, customer, "2023-01", "old refund request", message_count=7)
    refresher = ProfileRefresher(text_generator, session_factory, clock)

    stats = refresher.summary_statistics("acme", last_periods=6)
    assert stats["since_period"] == "2023-12"
    assert stats["total_customers"] == 2
    assert stats["customers_with_summaries"] == 1
    assert stats["total_summaries"] == 1
    assert stats["total_messages_processed"] == 5
    assert stats["coverage_percentage"] == 50

    hits = refresher.search_summaries("acme", customer, "refund")
    assert [hit["period_key"] for hit in hits] == ["2024-03", "2023-01"]
    assert [hit["period_key"] for hit in refresher.search_summaries("acme", customer, "50%")] == ["2024-03"]


def test_parse_profile_reply_rejects_malformed_fields():
    with pytest.raises(ExternalServiceError):
        parse_profile_reply({"tags": "not-a-list"})
    with pytest.raises(ExternalServiceError):
        parse_profile_reply(["not", "an", "object"])
    parsed = parse_profile_reply({"summary": "  ", "insights": [" a ", ""]})
    assert parsed["summary"] is None
    assert parsed["insights"] == ["a"]
    assert parsed["profile"] == {}


def test_refresh_marks_last_update(session_factory, clock, text_generator, customer, db_session):
    _add_summary(session_factory, customer, "2024-01", "asked about delivery")
    clock.set(datetime(2024, 5, 20, 8, 30, 0))
    ProfileRefresher(text_generator, session_factory, clock).refresh("acme", customer)
    assert db_session.get(Customer, customer).last_profile_update == datetime(2024, 5, 20, 8, 30, 0)
