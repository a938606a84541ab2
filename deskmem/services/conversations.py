"""
Conversation store: period-partitioned conversations and their messages.

Counters (`message_count`, tenant aggregates) are only ever changed with
SQL-side increments so concurrent appenders never lose an update.
"""

from __future__ import annotations

from collections import Counter
from typing import Callable, Optional, Sequence

from sqlalchemy import or_

import deskmem.config as config
from deskmem.clock import Clock, default_clock, to_naive_utc
from deskmem.config import logger
from deskmem.errors import ConflictError, NotFoundError, ValidationIssue
from deskmem.models import (
    Conversation,
    ConversationState,
    Customer,
    Message,
    MessageRole,
    Priority,
    Tenant,
)
from deskmem.periods import period_key_for, parse_period
from deskmem.services.categorization import GENERAL_CATEGORY, Categorizer, merge_tags
from deskmem.services.shared import (
    get_conversation_or_raise,
    get_customer_or_raise,
    resolve_session_factory,
    serialize_conversation,
    serialize_message,
)
from deskmem.validators import (
    validate_limit,
    validate_message,
    validate_metadata,
    validate_optional_text,
    validate_tags,
)

APPEND_ATTEMPTS = 3
PRIORITY_RANK = {
    Priority.low.value: 0,
    Priority.normal.value: 1,
    Priority.high.value: 2,
    Priority.urgent.value: 3,
}


class ConversationStore:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        clock: Optional[Clock] = None,
        categorizer: Optional[Categorizer] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or default_clock
        self.categorizer = categorizer or Categorizer()

    def _session(self):
        return resolve_session_factory(self._session_factory)()

    def _now(self):
        return to_naive_utc(self.clock.now())

    # ------------------------------------------------------------------
    # Creation & append
    # ------------------------------------------------------------------

    def _create(self, db, tenant_id: str, customer_id: str, metadata: Optional[dict]) -> Conversation:
        get_customer_or_raise(db, tenant_id, customer_id)
        now = self._now()
        conversation = Conversation(
            tenant_id=tenant_id,
            customer_id=customer_id,
            period_key=period_key_for(now),
            state=ConversationState.current,
            category=GENERAL_CATEGORY,
            priority=Priority.normal,
            sentiment="neutral",
            tags=[],
            message_count=0,
            metadata_=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        db.query(Tenant).filter(Tenant.id == tenant_id).update(
            {Tenant.conversation_count: Tenant.conversation_count + 1},
            synchronize_session=False,
        )
        db.query(Customer).filter(Customer.id == customer_id).update(
            {Customer.last_activity_at: now},
            synchronize_session=False,
        )
        db.flush()
        return conversation

    def create_conversation(self, tenant_id: str, customer_id: str, metadata: Optional[dict] = None) -> str:
        validate_metadata(metadata, "metadata")
        db = self._session()
        try:
            conversation = self._create(db, tenant_id, customer_id, metadata)
            db.commit()
            logger.info(
                "Conversation created",
                extra={"tenant_id": tenant_id, "conversation_id": conversation.id, "period_key": conversation.period_key},
            )
            return conversation.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _append(self, db, conversation_id: str, message: dict) -> Message:
        explicit_ts = to_naive_utc(message.get("timestamp"))

        for _ in range(APPEND_ATTEMPTS):
            if explicit_ts is not None:
                ts = explicit_ts
            else:
                ts = self._now()
                floor = (
                    db.query(Conversation.last_message_at)
                    .filter(Conversation.id == conversation_id)
                    .scalar()
                )
                if floor is not None and floor > ts:
                    ts = floor

            updated = (
                db.query(Conversation)
                .filter(
                    Conversation.id == conversation_id,
                    Conversation.state == ConversationState.current,
                    or_(Conversation.last_message_at.is_(None), Conversation.last_message_at <= ts),
                )
                .update(
                    {
                        Conversation.message_count: Conversation.message_count + 1,
                        Conversation.last_message_at: ts,
                        Conversation.updated_at: ts,
                    },
                    synchronize_session=False,
                )
            )
            if updated:
                break

            row = (
                db.query(Conversation.state, Conversation.last_message_at)
                .filter(Conversation.id == conversation_id)
                .first()
            )
            if row is None:
                raise NotFoundError("conversation", conversation_id)
            if row.state == ConversationState.archived:
                raise ConflictError(f"conversation {conversation_id} is archived")
            if explicit_ts is not None:
                raise ValidationIssue(
                    "timestamp is older than the conversation's last message",
                    field="timestamp",
                    error_type="out_of_order",
                )
        else:
            raise ConflictError(f"conversation {conversation_id} is under heavy concurrent append")

        conversation_row = (
            db.query(Conversation.message_count, Conversation.tenant_id, Conversation.customer_id)
            .filter(Conversation.id == conversation_id)
            .one()
        )
        record = Message(
            conversation_id=conversation_id,
            seq=conversation_row.message_count,
            role=MessageRole(message["role"]),
            content=message["content"],
            platform=message.get("platform"),
            metadata_=message.get("metadata") or {},
            timestamp=ts,
        )
        db.add(record)
        db.query(Tenant).filter(Tenant.id == conversation_row.tenant_id).update(
            {Tenant.message_count: Tenant.message_count + 1},
            synchronize_session=False,
        )
        db.query(Customer).filter(Customer.id == conversation_row.customer_id).update(
            {Customer.last_activity_at: ts},
            synchronize_session=False,
        )
        db.flush()
        return record

    def append_message(self, conversation_id: str, message: dict) -> str:
        """
        Append one message to a CURRENT conversation.

        `message` carries `role`, `content` and optionally `platform`,
        `metadata` and `timestamp`. Returns the new message id.
        """
        validate_message(message)
        db = self._session()
        try:
            record = self._append(db, conversation_id, message)
            db.commit()
            return record.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def ingest_message(
        self,
        tenant_id: str,
        customer_id: str,
        message: dict,
        conversation_id: Optional[str] = None,
    ) -> dict:
        """
        Route an inbound message into the customer's open conversation.

        Reuses the most recent CURRENT conversation of the current period when
        no id is given, otherwise opens a new one. Customer messages are
        classified and folded into the conversation's category, priority,
        sentiment, subject and tags.
        """
        validate_message(message)
        db = self._session()
        try:
            get_customer_or_raise(db, tenant_id, customer_id)
            created = False
            if conversation_id:
                conversation = get_conversation_or_raise(db, conversation_id)
                if conversation.tenant_id != tenant_id or conversation.customer_id != customer_id:
                    raise NotFoundError("conversation", conversation_id)
            else:
                conversation = (
                    db.query(Conversation)
                    .filter(
                        Conversation.tenant_id == tenant_id,
                        Conversation.customer_id == customer_id,
                        Conversation.state == ConversationState.current,
                        Conversation.period_key == period_key_for(self._now()),
                    )
                    .order_by(Conversation.last_message_at.is_(None), Conversation.last_message_at.desc())
                    .first()
                )
                if conversation is None:
                    conversation = self._create(db, tenant_id, customer_id, None)
                    created = True

            record = self._append(db, conversation.id, message)
            db.refresh(conversation)

            classification = None
            if record.role == MessageRole.customer:
                result = self.categorizer.classify(record.content, platform=record.platform)
                self._apply_classification(conversation, result.to_dict())
                classification = result.to_dict()

            db.commit()
            logger.info(
                "Message ingested",
                extra={
                    "tenant_id": tenant_id,
                    "conversation_id": conversation.id,
                    "seq": record.seq,
                    "created_conversation": created,
                },
            )
            return {
                "conversation_id": conversation.id,
                "message_id": record.id,
                "seq": record.seq,
                "period_key": conversation.period_key,
                "created_conversation": created,
                "classification": classification,
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _apply_classification(self, conversation: Conversation, result: dict) -> None:
        if result["category"] != GENERAL_CATEGORY or not conversation.category:
            conversation.category = result["category"]
        current_priority = conversation.priority.value if conversation.priority else Priority.normal.value
        # priority only escalates within a conversation
        if PRIORITY_RANK[result["priority"]] > PRIORITY_RANK[current_priority] or conversation.message_count == 1:
            conversation.priority = Priority(result["priority"])
        conversation.sentiment = result["sentiment"]
        if not conversation.subject:
            conversation.subject = result["subject"]
        existing = [tag for tag in conversation.tags or [] if tag != GENERAL_CATEGORY]
        incoming = result["tags"]
        if existing and incoming == [GENERAL_CATEGORY]:
            incoming = []
        conversation.tags = merge_tags(existing, incoming) or [GENERAL_CATEGORY]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> dict:
        db = self._session()
        try:
            return serialize_conversation(get_conversation_or_raise(db, conversation_id))
        finally:
            db.close()

    def list_current_conversations(
        self,
        tenant_id: str,
        customer_id: str,
        period_key: Optional[str] = None,
    ) -> list[dict]:
        if period_key is None:
            period_key = period_key_for(self._now())
        else:
            parse_period(period_key)
        db = self._session()
        try:
            get_customer_or_raise(db, tenant_id, customer_id)
            rows = (
                db.query(Conversation)
                .filter(
                    Conversation.tenant_id == tenant_id,
                    Conversation.customer_id == customer_id,
                    Conversation.state == ConversationState.current,
                    Conversation.period_key == period_key,
                )
                .order_by(
                    Conversation.last_message_at.is_(None),
                    Conversation.last_message_at.desc(),
                    Conversation.id.desc(),
                )
                .all()
            )
            return [serialize_conversation(row) for row in rows]
        finally:
            db.close()

    def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> list[dict]:
        """Messages oldest-to-newest; with `limit`, the most recent `limit` of them."""
        if limit is not None:
            validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = self._session()
        try:
            get_conversation_or_raise(db, conversation_id)
            query = db.query(Message).filter(Message.conversation_id == conversation_id)
            if limit is None:
                rows = query.order_by(Message.timestamp.asc(), Message.seq.asc()).all()
            else:
                rows = query.order_by(Message.timestamp.desc(), Message.seq.desc()).limit(limit).all()
                rows.reverse()
            return [serialize_message(row) for row in rows]
        finally:
            db.close()

    def conversations_by_tags(
        self,
        tenant_id: str,
        customer_id: str,
        tags: Sequence[str],
        include_archived: bool = False,
    ) -> list[dict]:
        validate_tags(tags)
        wanted = set(tags)
        db = self._session()
        try:
            get_customer_or_raise(db, tenant_id, customer_id)
            query = db.query(Conversation).filter(
                Conversation.tenant_id == tenant_id,
                Conversation.customer_id == customer_id,
            )
            if not include_archived:
                query = query.filter(Conversation.state == ConversationState.current)
            rows = query.order_by(Conversation.period_key.desc(), Conversation.last_message_at.desc()).all()
            return [serialize_conversation(row) for row in rows if wanted.intersection(row.tags or [])]
        finally:
            db.close()

    def conversation_statistics(
        self,
        tenant_id: str,
        customer_id: str,
        period_key: Optional[str] = None,
    ) -> dict:
        if period_key is None:
            period_key = period_key_for(self._now())
        else:
            parse_period(period_key)
        db = self._session()
        try:
            get_customer_or_raise(db, tenant_id, customer_id)
            rows = (
                db.query(Conversation)
                .filter(
                    Conversation.tenant_id == tenant_id,
                    Conversation.customer_id == customer_id,
                    Conversation.period_key == period_key,
                )
                .all()
            )
            by_category: Counter = Counter()
            by_priority: Counter = Counter()
            by_tag: Counter = Counter()
            by_state: Counter = Counter()
            for row in rows:
                by_category[row.category or GENERAL_CATEGORY] += 1
                by_priority[row.priority.value] += 1
                by_state[row.state.value] += 1
                by_tag.update(row.tags or [])
            return {
                "tenant_id": tenant_id,
                "customer_id": customer_id,
                "period_key": period_key,
                "total": len(rows),
                "by_category": dict(by_category),
                "by_priority": dict(by_priority),
                "by_tag": dict(by_tag),
                "by_state": dict(by_state),
            }
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Mutations on open conversations
    # ------------------------------------------------------------------

    def _locked_current(self, db, conversation_id: str) -> Conversation:
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .with_for_update()
            .first()
        )
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        if conversation.state != ConversationState.current:
            raise ConflictError(f"conversation {conversation_id} is archived")
        return conversation

    def add_tags(self, conversation_id: str, tags: Sequence[str]) -> list[str]:
        """Set-union `tags` into the conversation; returns the resulting tags."""
        validate_tags(tags)
        db = self._session()
        try:
            conversation = self._locked_current(db, conversation_id)
            merged = merge_tags(conversation.tags, tags)
            if merged != list(conversation.tags or []):
                conversation.tags = merged
                conversation.updated_at = self._now()
            db.commit()
            return merged
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_classification(
        self,
        conversation_id: str,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        sentiment: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> dict:
        validate_optional_text(category, "category", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(sentiment, "sentiment", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(subject, "subject", config.MAX_SHORT_TEXT_LENGTH)
        if priority is not None and priority not in PRIORITY_RANK:
            raise ValidationIssue(
                "priority must be one of: low|normal|high|urgent",
                field="priority",
                error_type="invalid_value",
            )
        db = self._session()
        try:
            conversation = self._locked_current(db, conversation_id)
            if category is not None:
                conversation.category = category
            if priority is not None:
                conversation.priority = Priority(priority)
            if sentiment is not None:
                conversation.sentiment = sentiment
            if subject is not None:
                conversation.subject = subject
            conversation.updated_at = self._now()
            db.commit()
            return serialize_conversation(conversation)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
