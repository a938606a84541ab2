"""
Context assembly endpoints used by the response path.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from deskmem.admin_commands import AdminServices
from app.deps import get_services


router = APIRouter()


@router.get("/tenants/{tenant_id}/customers/{customer_id}/context")
def build_context(
    tenant_id: str,
    customer_id: str,
    recent_message_limit: Optional[int] = Query(None),
    summary_limit: Optional[int] = Query(None),
    services: AdminServices = Depends(get_services),
):
    """Assemble the customer context and the response mode it allows."""
    context = services.context.build_context(tenant_id, customer_id, recent_message_limit, summary_limit)
    result = context.to_dict()
    result["response_mode"] = services.context.decide_response_mode(context)
    return result


@router.post("/tenants/{tenant_id}/customers/{customer_id}/draft-response")
def draft_response(
    tenant_id: str,
    customer_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    message = payload.get("message") if isinstance(payload, dict) else None
    return services.context.draft_response(tenant_id, customer_id, message)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/insights")
def customer_insights(tenant_id: str, customer_id: str, services: AdminServices = Depends(get_services)):
    return services.context.customer_insights(tenant_id, customer_id)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/history")
def relevant_history(
    tenant_id: str,
    customer_id: str,
    topic: str = Query(...),
    services: AdminServices = Depends(get_services),
):
    return services.context.find_relevant_history(tenant_id, customer_id, topic)


@router.post("/tenants/{tenant_id}/customers/{customer_id}/profile/refresh")
def refresh_profile(tenant_id: str, customer_id: str, services: AdminServices = Depends(get_services)):
    return services.profiles.refresh(tenant_id, customer_id)
