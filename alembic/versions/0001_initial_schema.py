"""Initial DeskMemory schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    uuid_type = postgresql.UUID(as_uuid=True) if is_postgres else sa.String(length=36)

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("domain", sa.String(length=255)),
        sa.Column("custom_prompt", sa.Text()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("settings", json_type),
        sa.Column("customer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(length=255)),
        sa.Column("contact", json_type),
        sa.Column("summary", sa.Text()),
        sa.Column("profile", json_type),
        sa.Column("tags", json_type),
        sa.Column("insights", json_type),
        sa.Column("recommendations", json_type),
        sa.Column("last_profile_update", sa.DateTime(timezone=True)),
        sa.Column("profile_refresh_requested_at", sa.DateTime(timezone=True)),
        sa.Column("last_activity_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_customers_tenant", "customers", ["tenant_id"])
    op.create_index("ix_customers_refresh_pending", "customers", ["profile_refresh_requested_at"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("customer_id", sa.String(length=100), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("period_key", sa.String(length=7), nullable=False),
        sa.Column("state", sa.String(length=8), nullable=False, server_default="current"),
        sa.Column("category", sa.String(length=50), nullable=False, server_default="general"),
        sa.Column("priority", sa.String(length=6), nullable=False, server_default="normal"),
        sa.Column("sentiment", sa.String(length=20)),
        sa.Column("subject", sa.String(length=255)),
        sa.Column("tags", json_type),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", json_type),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_conversations_tenant_customer_state",
        "conversations",
        ["tenant_id", "customer_id", "state"],
    )
    op.create_index(
        "ix_conversations_tenant_state_period",
        "conversations",
        ["tenant_id", "state", "period_key"],
    )
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("conversation_id", sa.String(length=64), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=9), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(length=50)),
        sa.Column("metadata", json_type),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
    )
    op.create_index(
        "ix_messages_conversation_timestamp",
        "messages",
        ["conversation_id", "timestamp", "seq"],
    )

    op.create_table(
        "conversation_summaries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("customer_id", sa.String(length=100), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("period_key", sa.String(length=7), nullable=False),
        sa.Column("summary_text", sa.Text(), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=100)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint(
            "tenant_id",
            "customer_id",
            "period_key",
            name="uq_summaries_tenant_customer_period",
        ),
    )
    op.create_index("ix_summaries_tenant_customer", "conversation_summaries", ["tenant_id", "customer_id"])

    op.create_table(
        "learning_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.String(length=100), nullable=False),
        sa.Column("input", json_type),
        sa.Column("context", json_type),
        sa.Column("analysis", json_type),
        sa.Column("response", json_type),
        sa.Column("processing_ms", sa.Float()),
        sa.Column("feedback", json_type),
        sa.Column("feedback_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_learning_records_tenant_created", "learning_records", ["tenant_id", "created_at"])

    op.create_table(
        "failure_analyses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "learning_record_id",
            sa.Integer(),
            sa.ForeignKey("learning_records.id"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.String(length=100), nullable=False),
        sa.Column("issue", json_type),
        sa.Column("context", json_type),
        sa.Column("possible_causes", json_type),
        sa.Column("suggested_actions", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_failure_analyses_tenant", "failure_analyses", ["tenant_id"])
    op.create_index("ix_failure_analyses_record", "failure_analyses", ["learning_record_id"])

    op.create_table(
        "audit_events",
        sa.Column("event_id", uuid_type, primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_ids", json_type, nullable=False),
        sa.Column("count_affected", sa.Integer()),
        sa.Column("reason", sa.Text()),
        sa.Column("request_id", sa.String(length=255)),
        sa.Column("metadata", json_type),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_failure_analyses_record", table_name="failure_analyses")
    op.drop_index("ix_failure_analyses_tenant", table_name="failure_analyses")
    op.drop_table("failure_analyses")
    op.drop_index("ix_learning_records_tenant_created", table_name="learning_records")
    op.drop_table("learning_records")
    op.drop_index("ix_summaries_tenant_customer", table_name="conversation_summaries")
    op.drop_table("conversation_summaries")
    op.drop_index("ix_messages_conversation_timestamp", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_tenant_state_period", table_name="conversations")
    op.drop_index("ix_conversations_tenant_customer_state", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_customers_refresh_pending", table_name="customers")
    op.drop_index("ix_customers_tenant", table_name="customers")
    op.drop_table("customers")
    op.drop_table("tenants")
