"""
Conversation ingest and read endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from deskmem.admin_commands import AdminServices
from deskmem.errors import ValidationIssue
from app.deps import get_services


router = APIRouter()


def _require_dict(payload, field: str = "payload") -> dict:
    if not isinstance(payload, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    return payload


def _message_from_payload(payload) -> dict:
    """Copy of the body with an ISO-8601 `timestamp` string parsed to a datetime."""
    message = {key: value for key, value in _require_dict(payload).items() if key != "conversation_id"}
    timestamp = message.get("timestamp")
    if isinstance(timestamp, str):
        try:
            message["timestamp"] = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationIssue(
                "timestamp must be an ISO-8601 datetime",
                field="timestamp",
                error_type="invalid_type",
            ) from exc
    return message


@router.post("/tenants/{tenant_id}/customers/{customer_id}/messages")
def ingest_message(
    tenant_id: str,
    customer_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    """Route one inbound message into the customer's open conversation."""
    message = _message_from_payload(payload)
    return services.conversations.ingest_message(
        tenant_id,
        customer_id,
        message,
        conversation_id=payload.get("conversation_id"),
    )


@router.post("/tenants/{tenant_id}/customers/{customer_id}/conversations")
def create_conversation(
    tenant_id: str,
    customer_id: str,
    payload: Optional[dict] = Body(None),
    services: AdminServices = Depends(get_services),
):
    metadata = _require_dict(payload).get("metadata") if payload is not None else None
    conversation_id = services.conversations.create_conversation(tenant_id, customer_id, metadata)
    return services.conversations.get_conversation(conversation_id)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/conversations")
def list_conversations(
    tenant_id: str,
    customer_id: str,
    period: Optional[str] = Query(None),
    tags: Optional[str] = Query(None),
    include_archived: bool = Query(False),
    services: AdminServices = Depends(get_services),
):
    """List CURRENT conversations of a period, or conversations carrying any of `tags`."""
    if tags:
        wanted = [tag.strip() for tag in tags.split(",") if tag.strip()]
        return services.conversations.conversations_by_tags(
            tenant_id, customer_id, wanted, include_archived=include_archived
        )
    return services.conversations.list_current_conversations(tenant_id, customer_id, period)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/statistics")
def conversation_statistics(
    tenant_id: str,
    customer_id: str,
    period: Optional[str] = Query(None),
    services: AdminServices = Depends(get_services),
):
    return services.conversations.conversation_statistics(tenant_id, customer_id, period)


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, services: AdminServices = Depends(get_services)):
    return services.conversations.get_conversation(conversation_id)


@router.get("/conversations/{conversation_id}/messages")
def get_messages(
    conversation_id: str,
    limit: Optional[int] = Query(None),
    services: AdminServices = Depends(get_services),
):
    return services.conversations.get_messages(conversation_id, limit)


@router.post("/conversations/{conversation_id}/messages")
def append_message(
    conversation_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    message_id = services.conversations.append_message(conversation_id, _message_from_payload(payload))
    return {"conversation_id": conversation_id, "message_id": message_id}


@router.post("/conversations/{conversation_id}/tags")
def add_tags(
    conversation_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    tags = _require_dict(payload).get("tags")
    return {"conversation_id": conversation_id, "tags": services.conversations.add_tags(conversation_id, tags)}


@router.patch("/conversations/{conversation_id}/classification")
def update_classification(
    conversation_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    payload = _require_dict(payload)
    return services.conversations.update_classification(
        conversation_id,
        category=payload.get("category"),
        priority=payload.get("priority"),
        sentiment=payload.get("sentiment"),
        subject=payload.get("subject"),
    )
