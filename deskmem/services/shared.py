"""
Lookups and serializers shared by the DeskMemory services.
"""

from __future__ import annotations

from typing import Callable, Optional

from deskmem.db import get_session
from deskmem.errors import NotFoundError
from deskmem.models import Conversation, ConversationSummary, Customer, Message, Tenant


def resolve_session_factory(session_factory: Optional[Callable]) -> Callable:
    return session_factory or get_session


def get_tenant_or_raise(db, tenant_id: str) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("tenant", tenant_id)
    return tenant


def get_customer_or_raise(db, tenant_id: str, customer_id: str) -> Customer:
    get_tenant_or_raise(db, tenant_id)
    customer = db.get(Customer, customer_id)
    if customer is None or customer.tenant_id != tenant_id:
        raise NotFoundError("customer", customer_id)
    return customer


def get_conversation_or_raise(db, conversation_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("conversation", conversation_id)
    return conversation


def tenant_setting(tenant: Tenant, key: str, default=None):
    settings = tenant.settings or {}
    value = settings.get(key)
    return default if value is None else value


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_tenant_meta(tenant: Tenant) -> dict:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "domain": tenant.domain,
        "custom_prompt": tenant.custom_prompt,
    }


def serialize_customer_meta(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "contact": customer.contact or {},
        "summary": customer.summary,
        "tags": list(customer.tags or []),
    }


def serialize_profile(customer: Customer) -> dict:
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "summary": customer.summary,
        "profile": customer.profile or {},
        "tags": list(customer.tags or []),
        "insights": list(customer.insights or []),
        "recommendations": list(customer.recommendations or []),
        "last_profile_update": _iso(customer.last_profile_update),
    }


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "tenant_id": conversation.tenant_id,
        "customer_id": conversation.customer_id,
        "period_key": conversation.period_key,
        "state": conversation.state.value,
        "category": conversation.category,
        "priority": conversation.priority.value,
        "sentiment": conversation.sentiment,
        "subject": conversation.subject,
        "tags": list(conversation.tags or []),
        "message_count": conversation.message_count,
        "last_message_at": _iso(conversation.last_message_at),
        "archived_at": _iso(conversation.archived_at),
        "metadata": conversation.metadata_ or {},
    }


def serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "seq": message.seq,
        "role": message.role.value,
        "content": message.content,
        "platform": message.platform,
        "metadata": message.metadata_ or {},
        "timestamp": message.timestamp,
    }


def serialize_summary(summary: ConversationSummary) -> dict:
    return {
        "id": summary.id,
        "customer_id": summary.customer_id,
        "period_key": summary.period_key,
        "summary_text": summary.summary_text,
        "message_count": summary.message_count,
        "conversation_count": summary.conversation_count,
        "created_at": _iso(summary.created_at),
    }
