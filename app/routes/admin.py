"""
Operator command endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from deskmem.admin_commands import AdminServices, execute
from deskmem.config import logger
from app.deps import get_services


router = APIRouter()


@router.post("/tenants/{tenant_id}/admin/commands")
def run_command(
    tenant_id: str,
    payload: dict = Body(...),
    services: AdminServices = Depends(get_services),
):
    text = payload.get("command") if isinstance(payload, dict) else None
    result = execute(services, tenant_id, text)
    logger.info("admin_command", extra={"tenant_id": tenant_id, "command": result["command"]})
    return result
