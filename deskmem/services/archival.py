"""
Archival and summarization of aged conversations.

Conversations older than the tenant's retention window are grouped by
(customer, period), compressed into one summary per group, and flipped to
ARCHIVED. Each group commits on its own, so a crash or cancellation leaves
every finished group fully archived and every other group untouched.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

import deskmem.config as config
from deskmem.audit import log_event
from deskmem.audit_constants import (
    EVENT_CONVERSATIONS_ARCHIVED,
    EVENT_PROFILE_REFRESH_REQUESTED,
    EVENT_SUMMARY_CREATED,
)
from deskmem.clock import Clock, default_clock, to_naive_utc
from deskmem.config import logger
from deskmem.errors import ConflictError, ExternalServiceError, ValidationIssue
from deskmem.llm import TextGenerator
from deskmem.models import (
    Conversation,
    ConversationState,
    ConversationSummary,
    Customer,
    Message,
)
from deskmem.periods import period_key_for, retention_window_start
from deskmem.services.shared import (
    get_customer_or_raise,
    get_tenant_or_raise,
    resolve_session_factory,
    serialize_customer_meta,
    serialize_message,
    serialize_tenant_meta,
    tenant_setting,
)

ACTOR = "archival"


@dataclass
class ArchivalReport:
    tenant_id: str
    cutoff_period: str
    retention_periods: int
    processed_groups: int = 0
    archived_groups: int = 0
    archived_conversations: int = 0
    summaries_created: int = 0
    skipped: int = 0
    errored: int = 0
    errors: list[dict] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def stop_requested(should_stop: Any) -> bool:
    if should_stop is None:
        return False
    if hasattr(should_stop, "is_set"):
        return should_stop.is_set()
    return bool(should_stop())


def resolve_retention_periods(tenant, override: Optional[int] = None) -> int:
    value = override
    if value is None:
        value = tenant_setting(tenant, config.TENANT_SETTINGS_RETENTION_KEY, config.ARCHIVE_RETENTION_PERIODS)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationIssue(
            "retention_periods must be an integer of at least 1",
            field="retention_periods",
            error_type="out_of_range",
        )
    return value


class ArchivalPipeline:
    def __init__(
        self,
        text_generator: Optional[TextGenerator],
        session_factory: Optional[Callable] = None,
        clock: Optional[Clock] = None,
    ):
        self.text_generator = text_generator
        self._session_factory = session_factory
        self.clock = clock or default_clock

    def _session(self):
        return resolve_session_factory(self._session_factory)()

    def _now(self) -> datetime:
        return to_naive_utc(self.clock.now())

    def _select_groups(self, tenant_id, customer_id, retention_periods):
        db = self._session()
        try:
            tenant = get_tenant_or_raise(db, tenant_id)
            if customer_id is not None:
                get_customer_or_raise(db, tenant_id, customer_id)
            retention = resolve_retention_periods(tenant, retention_periods)
            cutoff = retention_window_start(period_key_for(self._now()), retention)

            query = db.query(Conversation.customer_id, Conversation.period_key).filter(
                Conversation.tenant_id == tenant_id,
                Conversation.state == ConversationState.current,
                Conversation.period_key < cutoff,
            )
            if customer_id is not None:
                query = query.filter(Conversation.customer_id == customer_id)
            groups = [
                (row.customer_id, row.period_key)
                for row in query.distinct().order_by(Conversation.customer_id, Conversation.period_key).all()
            ]
            return serialize_tenant_meta(tenant), retention, cutoff, groups
        finally:
            db.close()

    def run(
        self,
        tenant_id: str,
        customer_id: Optional[str] = None,
        retention_periods: Optional[int] = None,
        should_stop: Any = None,
    ) -> ArchivalReport:
        """
        Archive every CURRENT conversation whose period fell out of the
        retention window.

        `should_stop` is a callable or an Event-like object checked between
        groups.
        """
        tenant_meta, retention, cutoff, groups = self._select_groups(tenant_id, customer_id, retention_periods)
        report = ArchivalReport(tenant_id=tenant_id, cutoff_period=cutoff, retention_periods=retention)
        logger.info(
            "Archival run starting",
            extra={"tenant_id": tenant_id, "cutoff_period": cutoff, "groups": len(groups)},
        )

        for group_customer_id, period_key in groups:
            if stop_requested(should_stop):
                report.cancelled = True
                logger.info("Archival run cancelled", extra={"tenant_id": tenant_id})
                break
            report.processed_groups += 1
            try:
                outcome = self._archive_group(tenant_meta, group_customer_id, period_key)
            except Exception as exc:
                # one customer's failure never aborts the rest of the batch
                report.errored += 1
                report.errors.append(
                    {"customer_id": group_customer_id, "period_key": period_key, "error": str(exc)}
                )
                logger.warning(
                    "Archival group failed",
                    extra={
                        "tenant_id": tenant_id,
                        "customer_id": group_customer_id,
                        "period_key": period_key,
                        "error_type": type(exc).__name__,
                    },
                )
                continue

            report.archived_conversations += outcome["conversations"]
            if outcome["status"] == "archived":
                report.archived_groups += 1
                if outcome["summary_created"]:
                    report.summaries_created += 1
            else:
                report.skipped += 1

        logger.info(
            "Archival run complete",
            extra={
                "tenant_id": tenant_id,
                "processed_groups": report.processed_groups,
                "archived_groups": report.archived_groups,
                "summaries_created": report.summaries_created,
                "skipped": report.skipped,
                "errored": report.errored,
                "cancelled": report.cancelled,
            },
        )
        return report

    def _mark_archived(self, db, tenant_id: str, customer_id: str, period_key: str, ids: list[str], now) -> None:
        updated = (
            db.query(Conversation)
            .filter(Conversation.id.in_(ids), Conversation.state == ConversationState.current)
            .update(
                {
                    Conversation.state: ConversationState.archived,
                    Conversation.archived_at: now,
                    Conversation.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != len(ids):
            raise ConflictError(f"group {customer_id}/{period_key} changed while archiving")
        log_event(
            db,
            event_type=EVENT_CONVERSATIONS_ARCHIVED,
            tenant_id=tenant_id,
            actor_type="system",
            actor_id=ACTOR,
            target_type="conversation",
            target_ids=ids,
            count_affected=len(ids),
            reason="retention_window",
            metadata={"customer_id": customer_id, "period_key": period_key},
            created_at=now,
        )

    def _archive_group(self, tenant_meta: dict, customer_id: str, period_key: str) -> dict:
        tenant_id = tenant_meta["id"]
        db = self._session()
        try:
            conversations = (
                db.query(Conversation)
                .filter(
                    Conversation.tenant_id == tenant_id,
                    Conversation.customer_id == customer_id,
                    Conversation.period_key == period_key,
                    Conversation.state == ConversationState.current,
                )
                .order_by(Conversation.created_at, Conversation.id)
                .with_for_update()
                .all()
            )
            if not conversations:
                return {"status": "skipped", "conversations": 0, "summary_created": False}

            now = self._now()
            ids = [conversation.id for conversation in conversations]
            existing = (
                db.query(ConversationSummary.id)
                .filter(
                    ConversationSummary.tenant_id == tenant_id,
                    ConversationSummary.customer_id == customer_id,
                    ConversationSummary.period_key == period_key,
                )
                .first()
            )
            if existing is not None:
                # summary already written by an earlier run; only close out stragglers
                self._mark_archived(db, tenant_id, customer_id, period_key, ids, now)
                db.commit()
                return {"status": "skipped", "conversations": len(ids), "summary_created": False}

            messages = (
                db.query(Message)
                .filter(Message.conversation_id.in_(ids))
                .order_by(Message.timestamp.asc(), Message.seq.asc())
                .all()
            )
            if not messages:
                self._mark_archived(db, tenant_id, customer_id, period_key, ids, now)
                db.commit()
                return {"status": "archived", "conversations": len(ids), "summary_created": False}

            if self.text_generator is None:
                raise ExternalServiceError("no text generator configured for summarization")
            customer = db.get(Customer, customer_id)
            summary_text = self.text_generator.summarize(
                [serialize_message(message) for message in messages],
                serialize_customer_meta(customer),
                tenant_meta,
            )
            if not isinstance(summary_text, str) or not summary_text.strip():
                raise ExternalServiceError("summarizer returned no text")

            self._mark_archived(db, tenant_id, customer_id, period_key, ids, now)
            message_total = (
                db.query(func.coalesce(func.sum(Conversation.message_count), 0))
                .filter(Conversation.id.in_(ids))
                .scalar()
            )
            if message_total != len(messages):
                raise ConflictError(f"group {customer_id}/{period_key} received messages while archiving")

            summary = ConversationSummary(
                tenant_id=tenant_id,
                customer_id=customer_id,
                period_key=period_key,
                summary_text=summary_text.strip(),
                message_count=len(messages),
                conversation_count=len(ids),
                created_by=ACTOR,
                created_at=now,
            )
            db.add(summary)
            db.flush()

            db.query(Customer).filter(Customer.id == customer_id).update(
                {Customer.profile_refresh_requested_at: now},
                synchronize_session=False,
            )
            log_event(
                db,
                event_type=EVENT_SUMMARY_CREATED,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=ACTOR,
                target_type="summary",
                target_ids=[summary.id],
                count_affected=len(messages),
                metadata={"customer_id": customer_id, "period_key": period_key},
                created_at=now,
            )
            log_event(
                db,
                event_type=EVENT_PROFILE_REFRESH_REQUESTED,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=ACTOR,
                target_type="customer",
                target_ids=[customer_id],
                reason="new_summary",
                created_at=now,
            )
            db.commit()
            logger.info(
                "Archived conversation group",
                extra={
                    "tenant_id": tenant_id,
                    "customer_id": customer_id,
                    "period_key": period_key,
                    "conversations": len(ids),
                    "messages": len(messages),
                },
            )
            return {"status": "archived", "conversations": len(ids), "summary_created": True}
        except IntegrityError:
            # a concurrent runner already stored this period's summary
            db.rollback()
            logger.info(
                "Summary already exists, group skipped",
                extra={"tenant_id": tenant_id, "customer_id": customer_id, "period_key": period_key},
            )
            return {"status": "skipped", "conversations": 0, "summary_created": False}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
