"""
Maintenance job endpoints: archival, profile refresh and summary reporting.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from deskmem.admin_commands import AdminServices
from deskmem.jobs import drain_profile_refreshes, run_archival
from app.deps import get_services


router = APIRouter()


@router.post("/jobs/archival")
def trigger_archival(
    payload: Optional[dict] = Body(None),
    services: AdminServices = Depends(get_services),
):
    """Run archival for one tenant, or for every active tenant when none is given."""
    payload = payload if isinstance(payload, dict) else {}
    results = run_archival(
        services.archival,
        tenant_id=payload.get("tenant_id"),
        customer_id=payload.get("customer_id"),
        retention_periods=payload.get("retention_periods"),
    )
    return {"status": "ok", "results": results}


@router.post("/jobs/profile-refresh")
def trigger_profile_refresh(
    payload: Optional[dict] = Body(None),
    services: AdminServices = Depends(get_services),
):
    payload = payload if isinstance(payload, dict) else {}
    result = drain_profile_refreshes(services.profiles, payload.get("tenant_id"), payload.get("limit"))
    return {"status": "ok", **result}


@router.get("/tenants/{tenant_id}/summaries/statistics")
def summary_statistics(
    tenant_id: str,
    last_periods: int = Query(6),
    services: AdminServices = Depends(get_services),
):
    return services.profiles.summary_statistics(tenant_id, last_periods)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/summaries")
def search_summaries(
    tenant_id: str,
    customer_id: str,
    query: str = Query(...),
    limit: int = Query(10),
    services: AdminServices = Depends(get_services),
):
    return services.profiles.search_summaries(tenant_id, customer_id, query, limit)
