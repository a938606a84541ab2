"""
Interaction logging, feedback and pattern endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from deskmem.admin_commands import AdminServices
from app.deps import get_services


router = APIRouter()


@router.post("/tenants/{tenant_id}/customers/{customer_id}/interactions")
def record_interaction(
    tenant_id: str,
    customer_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    """Log one AI interaction. A failed write is reported, never raised."""
    record_id = services.learning.record_interaction(tenant_id, customer_id, payload)
    return {"recorded": record_id is not None, "record_id": record_id}


@router.post("/learning/{record_id}/feedback")
def record_feedback(
    record_id: int,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    failure_id = services.learning.record_feedback(record_id, payload)
    return {"record_id": record_id, "failure_analysis_id": failure_id}


@router.get("/tenants/{tenant_id}/learning/patterns")
def analyze_patterns(
    tenant_id: str,
    days: Optional[int] = Query(None),
    services: AdminServices = Depends(get_services),
):
    return services.learning.analyze_patterns(tenant_id, days)


@router.get("/tenants/{tenant_id}/learning/optimize")
def optimize(tenant_id: str, services: AdminServices = Depends(get_services)):
    return services.learning.optimize(tenant_id)


@router.get("/learning/stats")
def agent_stats(
    tenant_id: Optional[str] = Query(None),
    hours: int = Query(24),
    services: AdminServices = Depends(get_services),
):
    return services.learning.agent_stats(tenant_id, hours)
