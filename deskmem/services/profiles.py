"""
Customer profile refresh and summary lookups.

Archival marks a customer with `profile_refresh_requested_at` in the same
commit that stores a new summary. `drain` works those markers off; a marker is
cleared only after a successful refresh, so a failed or interrupted refresh is
retried on the next drain.
"""

from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import func

import deskmem.config as config
from deskmem.audit import log_event
from deskmem.audit_constants import EVENT_PROFILE_REFRESHED
from deskmem.clock import Clock, default_clock, to_naive_utc
from deskmem.config import logger
from deskmem.errors import ExternalServiceError
from deskmem.llm import TextGenerator
from deskmem.models import ConversationSummary, Customer
from deskmem.periods import period_key_for, retention_window_start
from deskmem.services.shared import (
    get_customer_or_raise,
    get_tenant_or_raise,
    resolve_session_factory,
    serialize_customer_meta,
    serialize_profile,
    serialize_summary,
    serialize_tenant_meta,
)
from deskmem.validators import validate_limit, validate_required_text

PROFILE_LIST_FIELDS = ("tags", "insights", "recommendations")


def _string_list(value, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ExternalServiceError(f"profile reply field '{field_name}' is not a list")
    return [str(item).strip() for item in value if str(item).strip()]


def parse_profile_reply(reply: dict) -> dict:
    """Normalize a generated profile into the stored shape."""
    if not isinstance(reply, dict):
        raise ExternalServiceError("profile reply is not an object")
    profile = reply.get("profile") or {}
    if not isinstance(profile, dict):
        raise ExternalServiceError("profile reply field 'profile' is not an object")
    summary = reply.get("summary")
    if summary is not None and not isinstance(summary, str):
        raise ExternalServiceError("profile reply field 'summary' is not text")
    parsed = {"profile": profile, "summary": (summary or "").strip() or None}
    for name in PROFILE_LIST_FIELDS:
        parsed[name] = _string_list(reply.get(name), name)
    return parsed


class ProfileRefresher:
    def __init__(
        self,
        text_generator: Optional[TextGenerator],
        session_factory: Optional[Callable] = None,
        clock: Optional[Clock] = None,
        summary_window: Optional[int] = None,
    ):
        self.text_generator = text_generator
        self._session_factory = session_factory
        self.clock = clock or default_clock
        self.summary_window = summary_window or config.PROFILE_SUMMARY_WINDOW

    def _session(self):
        return resolve_session_factory(self._session_factory)()

    def _now(self):
        return to_naive_utc(self.clock.now())

    def refresh(self, tenant_id: str, customer_id: str) -> dict:
        """Recompute the customer's profile from their most recent summaries."""
        db = self._session()
        try:
            tenant = get_tenant_or_raise(db, tenant_id)
            customer = get_customer_or_raise(db, tenant_id, customer_id)
            started_at = self._now()
            summaries = (
                db.query(ConversationSummary)
                .filter(
                    ConversationSummary.tenant_id == tenant_id,
                    ConversationSummary.customer_id == customer_id,
                )
                .order_by(ConversationSummary.period_key.desc(), ConversationSummary.created_at.desc())
                .limit(self.summary_window)
                .all()
            )

            if summaries:
                if self.text_generator is None:
                    raise ExternalServiceError("no text generator configured for profile refresh")
                reply = self.text_generator.generate_profile(
                    serialize_customer_meta(customer),
                    [f"[{row.period_key}] {row.summary_text}" for row in summaries],
                    serialize_tenant_meta(tenant),
                )
                parsed = parse_profile_reply(reply)
                customer.profile = parsed["profile"]
                if parsed["summary"]:
                    customer.summary = parsed["summary"]
                customer.tags = parsed["tags"]
                customer.insights = parsed["insights"]
                customer.recommendations = parsed["recommendations"]
                customer.last_profile_update = started_at

            # clear the marker unless archival re-requested a refresh meanwhile
            db.query(Customer).filter(
                Customer.id == customer_id,
                Customer.profile_refresh_requested_at <= started_at,
            ).update({Customer.profile_refresh_requested_at: None}, synchronize_session=False)

            if summaries:
                log_event(
                    db,
                    event_type=EVENT_PROFILE_REFRESHED,
                    tenant_id=tenant_id,
                    actor_type="system",
                    actor_id="profile_refresher",
                    target_type="customer",
                    target_ids=[customer_id],
                    count_affected=len(summaries),
                    created_at=started_at,
                )
            db.commit()
            logger.info(
                "Profile refreshed",
                extra={"tenant_id": tenant_id, "customer_id": customer_id, "summaries_used": len(summaries)},
            )
            return serialize_profile(customer)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def pending(self, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> list[tuple[str, str]]:
        limit = limit or config.PROFILE_REFRESH_BATCH_LIMIT
        db = self._session()
        try:
            query = db.query(Customer.tenant_id, Customer.id).filter(
                Customer.profile_refresh_requested_at.isnot(None)
            )
            if tenant_id is not None:
                query = query.filter(Customer.tenant_id == tenant_id)
            rows = query.order_by(Customer.profile_refresh_requested_at.asc()).limit(limit).all()
            return [(row.tenant_id, row.id) for row in rows]
        finally:
            db.close()

    def drain(self, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> dict:
        """Refresh every customer with a pending marker, up to `limit`."""
        refreshed = 0
        errored = 0
        for pending_tenant_id, customer_id in self.pending(tenant_id, limit):
            try:
                self.refresh(pending_tenant_id, customer_id)
                refreshed += 1
            except Exception as exc:
                # marker stays set; the next drain retries
                errored += 1
                logger.warning(
                    "Profile refresh failed",
                    extra={
                        "tenant_id": pending_tenant_id,
                        "customer_id": customer_id,
                        "error_type": type(exc).__name__,
                    },
                )
        return {"refreshed": refreshed, "errored": errored}

    def summary_statistics(self, tenant_id: str, last_periods: int = 6) -> dict:
        validate_limit(last_periods, "last_periods", 120)
        db = self._session()
        try:
            get_tenant_or_raise(db, tenant_id)
            since = retention_window_start(period_key_for(self._now()), last_periods)
            total_customers = (
                db.query(func.count(Customer.id)).filter(Customer.tenant_id == tenant_id).scalar()
            )
            row = (
                db.query(
                    func.count(ConversationSummary.id),
                    func.count(func.distinct(ConversationSummary.customer_id)),
                    func.coalesce(func.sum(ConversationSummary.message_count), 0),
                )
                .filter(
                    ConversationSummary.tenant_id == tenant_id,
                    ConversationSummary.period_key >= since,
                )
                .one()
            )
            total_summaries, customers_with_summaries, messages_processed = row
            coverage = round(customers_with_summaries / total_customers * 100) if total_customers else 0
            return {
                "tenant_id": tenant_id,
                "since_period": since,
                "last_periods": last_periods,
                "total_customers": total_customers,
                "customers_with_summaries": customers_with_summaries,
                "total_summaries": total_summaries,
                "total_messages_processed": int(messages_processed),
                "coverage_percentage": coverage,
            }
        finally:
            db.close()

    def search_summaries(self, tenant_id: str, customer_id: str, query: str, limit: int = 10) -> list[dict]:
        validate_required_text(query, "query", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = self._session()
        try:
            get_customer_or_raise(db, tenant_id, customer_id)
            rows = (
                db.query(ConversationSummary)
                .filter(
                    ConversationSummary.tenant_id == tenant_id,
                    ConversationSummary.customer_id == customer_id,
                    func.lower(ConversationSummary.summary_text).contains(query.strip().lower(), autoescape=True),
                )
                .order_by(ConversationSummary.period_key.desc())
                .limit(limit)
                .all()
            )
            return [serialize_summary(row) for row in rows]
        finally:
            db.close()
