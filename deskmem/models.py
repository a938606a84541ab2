"""
DeskMemory database models
PostgreSQL (JSONB) or SQLite (JSON) schema
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, Index, UniqueConstraint, Enum, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base

import deskmem.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)


def _string_id() -> str:
    return uuid.uuid4().hex


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class ConversationState(str, PyEnum):
    current = "current"
    archived = "archived"


class Priority(str, PyEnum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class MessageRole(str, PyEnum):
    customer = "customer"
    assistant = "assistant"
    system = "system"


# =============================================================================
# Tenants & customers (owned by the admin surface, read here)
# =============================================================================

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255))
    custom_prompt = Column(Text)
    active = Column(Boolean, default=True, nullable=False)
    settings = Column(JSON_TYPE, default=dict)

    # Aggregate counters, only ever bumped with SQL-side increments
    customer_count = Column(Integer, default=0, nullable=False)
    conversation_count = Column(Integer, default=0, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(100), primary_key=True)
    tenant_id = Column(String(100), ForeignKey("tenants.id"), nullable=False)
    name = Column(String(255))
    contact = Column(JSON_TYPE, default=dict)

    # Long-lived profile, rewritten by the profile refresher
    summary = Column(Text)
    profile = Column(JSON_TYPE, default=dict)
    tags = Column(JSON_TYPE, default=list)
    insights = Column(JSON_TYPE, default=list)
    recommendations = Column(JSON_TYPE, default=list)
    last_profile_update = Column(DateTime(timezone=True))
    profile_refresh_requested_at = Column(DateTime(timezone=True))

    last_activity_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("ix_customers_tenant", "tenant_id"),
        Index("ix_customers_refresh_pending", "profile_refresh_requested_at"),
    )


# =============================================================================
# Conversations & messages
# =============================================================================

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True, default=_string_id)
    tenant_id = Column(String(100), ForeignKey("tenants.id"), nullable=False)
    customer_id = Column(String(100), ForeignKey("customers.id"), nullable=False)
    period_key = Column(String(7), nullable=False)  # "YYYY-MM", fixed at creation
    state = Column(
        Enum(ConversationState, name="conversation_state", native_enum=False),
        default=ConversationState.current,
        nullable=False,
    )

    category = Column(String(50), default="general", nullable=False)
    priority = Column(
        Enum(Priority, name="conversation_priority", native_enum=False),
        default=Priority.normal,
        nullable=False,
    )
    sentiment = Column(String(20), default="neutral")
    subject = Column(String(255))
    tags = Column(JSON_TYPE, default=list)

    message_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime(timezone=True))
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    archived_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("ix_conversations_tenant_customer_state", "tenant_id", "customer_id", "state"),
        Index("ix_conversations_tenant_state_period", "tenant_id", "state", "period_key"),
        Index("ix_conversations_last_message_at", "last_message_at"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, default=_string_id)
    conversation_id = Column(String(64), ForeignKey("conversations.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    role = Column(Enum(MessageRole, name="message_role", native_enum=False), nullable=False)
    content = Column(Text, nullable=False)
    platform = Column(String(50))
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
        Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp", "seq"),
    )


# =============================================================================
# Period summaries
# =============================================================================

class ConversationSummary(Base):
    __tablename__ = "conversation_summaries"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), ForeignKey("tenants.id"), nullable=False)
    customer_id = Column(String(100), ForeignKey("customers.id"), nullable=False)
    period_key = Column(String(7), nullable=False)
    summary_text = Column(Text, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    conversation_count = Column(Integer, default=0, nullable=False)
    created_by = Column(String(100), default="archival")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", "period_key", name="uq_summaries_tenant_customer_period"),
        Index("ix_summaries_tenant_customer", "tenant_id", "customer_id"),
    )


# =============================================================================
# Learning
# =============================================================================

class LearningRecord(Base):
    __tablename__ = "learning_records"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False)
    customer_id = Column(String(100), nullable=False)
    input = Column(JSON_TYPE, default=dict)
    context = Column(JSON_TYPE, default=dict)
    analysis = Column(JSON_TYPE, default=dict)
    response = Column(JSON_TYPE, default=dict)
    processing_ms = Column(Float)
    feedback = Column(JSON_TYPE)
    feedback_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_learning_records_tenant_created", "tenant_id", "created_at"),
    )


class FailureAnalysis(Base):
    __tablename__ = "failure_analyses"

    id = Column(Integer, primary_key=True)
    learning_record_id = Column(Integer, ForeignKey("learning_records.id"), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    customer_id = Column(String(100), nullable=False)
    issue = Column(JSON_TYPE, default=dict)
    context = Column(JSON_TYPE, default=dict)
    possible_causes = Column(JSON_TYPE, default=list)
    suggested_actions = Column(JSON_TYPE, default=list)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_failure_analyses_tenant", "tenant_id"),
        Index("ix_failure_analyses_record", "learning_record_id"),
    )


# =============================================================================
# Audit Events
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    count_affected = Column(Integer)
    reason = Column(Text)
    request_id = Column(String(255))
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_tenant_id", "tenant_id"),
    )
