import os
import threading
from datetime import datetime

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from conftest import seed_customer
from deskmem.audit_constants import (
    EVENT_CONVERSATIONS_ARCHIVED,
    EVENT_PROFILE_REFRESH_REQUESTED,
    EVENT_SUMMARY_CREATED,
)
from deskmem.errors import ValidationIssue
from deskmem.models import AuditEvent, Conversation, ConversationState, ConversationSummary, Customer, Tenant
from deskmem.services.archival import ArchivalPipeline, resolve_retention_periods
from deskmem.services.conversations import ConversationStore


def _seed_periods(session_factory, clock, customer_id, periods, messages_per_period=2):
    """Create one conversation per period, each holding a few messages."""
    store = ConversationStore(session_factory, clock)
    ids = {}
    for period in periods:
        year, month = (int(part) for part in period.split("-"))
        clock.set(datetime(year, month, 10, 9, 0, 0))
        conversation_id = store.create_conversation("acme", customer_id)
        for index in range(messages_per_period):
            store.append_message(conversation_id, {"role": "customer", "content": f"{period} message {index}"})
        ids[period] = conversation_id
    clock.set(datetime(2024, 5, 15, 12, 0, 0))
    return ids


def _states(db_session, ids):
    db_session.expire_all()
    return {
        period: db_session.get(Conversation, conversation_id).state
        for period, conversation_id in ids.items()
    }


PERIODS = ["2024-01", "2024-02", "2024-03", "2024-04", "2024-05"]


def test_archival_archives_periods_outside_retention_window(
    session_factory, clock, text_generator, customer, db_session
):
    ids = _seed_periods(session_factory, clock, customer, PERIODS)
    pipeline = ArchivalPipeline(text_generator, session_factory, clock)

    report = pipeline.run("acme", retention_periods=2)

    assert report.cutoff_period == "2024-04"
    assert report.archived_groups == 3
    assert report.summaries_created == 3
    assert report.errored == 0
    states = _states(db_session, ids)
    assert [period for period, state in states.items() if state == ConversationState.archived] == [
        "2024-01",
        "2024-02",
        "2024-03",
    ]
    assert states["2024-04"] == ConversationState.current
    assert states["2024-05"] == ConversationState.current

    summaries = db_session.query(ConversationSummary).order_by(ConversationSummary.period_key).all()
    assert [summary.period_key for summary in summaries] == ["2024-01", "2024-02", "2024-03"]
    assert all(summary.message_count == 2 for summary in summaries)
    assert summaries[0].summary_text == "cust-1 sent 2 messages"

    archived = db_session.get(Conversation, ids["2024-01"])
    assert archived.archived_at == datetime(2024, 5, 15, 12, 0, 0)
    assert db_session.get(Customer, customer).profile_refresh_requested_at is not None


def test_archival_is_idempotent(session_factory, clock, text_generator, customer, db_session):
    _seed_periods(session_factory, clock, customer, PERIODS)
    pipeline = ArchivalPipeline(text_generator, session_factory, clock)
    pipeline.run("acme", retention_periods=2)
    calls_after_first_run = len(text_generator.summarize_calls)

    second = pipeline.run("acme", retention_periods=2)

    assert second.processed_groups == 0
    assert second.summaries_created == 0
    assert len(text_generator.summarize_calls) == calls_after_first_run
    assert db_session.query(ConversationSummary).count() == 3


def test_archival_closes_stragglers_without_a_second_summary(
    session_factory, clock, text_generator, customer, db_session
):
    ids = _seed_periods(session_factory, clock, customer, ["2024-01"])
    pipeline = ArchivalPipeline(text_generator, session_factory, clock)
    pipeline.run("acme", retention_periods=2)

    clock.set(datetime(2024, 1, 20, 9, 0, 0))
    straggler = ConversationStore(session_factory, clock).create_conversation("acme", customer)
    clock.set(datetime(2024, 5, 15, 12, 0, 0))

    report = pipeline.run("acme", retention_periods=2)

    assert report.skipped == 1
    assert report.summaries_created == 0
    assert db_session.query(ConversationSummary).count() == 1
    assert _states(db_session, {"old": ids["2024-01"], "new": straggler}) == {
        "old": ConversationState.archived,
        "new": ConversationState.archived,
    }


def test_group_failure_leaves_group_current_and_others_proceed(
    session_factory, clock, text_generator, customer, db_session
):
    seed_customer(session_factory, "acme", "cust-2")
    failing = _seed_periods(session_factory, clock, customer, ["2024-01"])
    healthy = _seed_periods(session_factory, clock, "cust-2", ["2024-01"])
    text_generator.fail_summarize_for = {customer}
    pipeline = ArchivalPipeline(text_generator, session_factory, clock)

    report = pipeline.run("acme", retention_periods=2)

    assert report.errored == 1
    assert report.errors[0]["customer_id"] == customer
    assert report.archived_groups == 1
    assert _states(db_session, failing)["2024-01"] == ConversationState.current
    assert _states(db_session, healthy)["2024-01"] == ConversationState.archived
    assert db_session.query(ConversationSummary).filter(ConversationSummary.customer_id == customer).count() == 0

    text_generator.fail_summarize_for = set()
    retry = pipeline.run("acme", retention_periods=2)
    assert retry.summaries_created == 1
    assert _states(db_session, failing)["2024-01"] == ConversationState.archived


def test_group_without_messages_is_archived_without_summary(
    session_factory, clock, text_generator, customer, db_session
):
    ids = _seed_periods(session_factory, clock, customer, ["2024-02"], messages_per_period=0)
    report = ArchivalPipeline(text_generator, session_factory, clock).run("acme", retention_periods=1)

    assert report.archived_groups == 1
    assert report.summaries_created == 0
    assert text_generator.summarize_calls == []
    assert _states(db_session, ids)["2024-02"] == ConversationState.archived
    assert db_session.get(Customer, customer).profile_refresh_requested_at is None


def test_cancellation_between_groups(session_factory, clock, text_generator, customer, db_session):
    _seed_periods(session_factory, clock, customer, ["2024-01", "2024-02"])
    stop = threading.Event()

    class StopAfterFirst:
        def summarize(self, messages, customer_meta, tenant_meta):
            stop.set()
            return "summary"

    report = ArchivalPipeline(StopAfterFirst(), session_factory, clock).run(
        "acme", retention_periods=2, should_stop=stop
    )

    assert report.cancelled is True
    assert report.archived_groups == 1
    assert db_session.query(ConversationSummary).count() == 1


def test_archival_is_scoped_to_one_customer(session_factory, clock, text_generator, customer, db_session):
    seed_customer(session_factory, "acme", "cust-2")
    mine = _seed_periods(session_factory, clock, customer, ["2024-01"])
    theirs = _seed_periods(session_factory, clock, "cust-2", ["2024-01"])

    ArchivalPipeline(text_generator, session_factory, clock).run("acme", customer_id=customer, retention_periods=2)

    assert _states(db_session, mine)["2024-01"] == ConversationState.archived
    assert _states(db_session, theirs)["2024-01"] == ConversationState.current


def test_archival_writes_audit_events_without_content(
    session_factory, clock, text_generator, customer, db_session
):
    _seed_periods(session_factory, clock, customer, ["2024-01"])
    ArchivalPipeline(text_generator, session_factory, clock).run("acme", retention_periods=2)

    events = {event.event_type: event for event in db_session.query(AuditEvent).all()}
    assert set(events) == {
        EVENT_CONVERSATIONS_ARCHIVED,
        EVENT_SUMMARY_CREATED,
        EVENT_PROFILE_REFRESH_REQUESTED,
    }
    assert events[EVENT_CONVERSATIONS_ARCHIVED].count_affected == 1
    assert events[EVENT_SUMMARY_CREATED].count_affected == 2
    for event in events.values():
        assert "message" not in str(event.metadata_ or {})


def test_tenant_setting_overrides_default_retention(session_factory, clock, text_generator, customer, db_session):
    tenant = db_session.get(Tenant, "acme")
    tenant.settings = {"retention_periods": 4}
    db_session.commit()
    ids = _seed_periods(session_factory, clock, customer, PERIODS)

    report = ArchivalPipeline(text_generator, session_factory, clock).run("acme")

    assert report.retention_periods == 4
    assert report.cutoff_period == "2024-02"
    states = _states(db_session, ids)
    assert states["2024-01"] == ConversationState.archived
    assert states["2024-02"] == ConversationState.current


def test_retention_periods_must_be_positive(tenant, db_session):
    with pytest.raises(ValidationIssue):
        resolve_retention_periods(db_session.get(Tenant, tenant), 0)
    with pytest.raises(ValidationIssue):
        resolve_retention_periods(db_session.get(Tenant, tenant), True)
