"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import deskmem.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "DeskMemory",
        "version": "0.1.0",
        "description": "Tiered conversation memory for multi-tenant customer support",
        "retention_periods_default": config.ARCHIVE_RETENTION_PERIODS,
        "text_generation_model": config.LLM_MODEL,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "ingest": "/tenants/{tenant_id}/customers/{customer_id}/messages",
            "context": "/tenants/{tenant_id}/customers/{customer_id}/context",
            "interactions": "/tenants/{tenant_id}/customers/{customer_id}/interactions",
            "feedback": "/learning/{record_id}/feedback",
            "archival": "/jobs/archival",
            "admin": "/tenants/{tenant_id}/admin/commands",
        },
    }
