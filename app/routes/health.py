"""
Liveness and dependency probes.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import deskmem.config as config
from deskmem.db import DB, schema_revisions
from deskmem.llm import llm_circuit_breaker

SERVICE_NAME = "DeskMemory"
SERVICE_VERSION = "0.1.0"

router = APIRouter()


def _database_status(with_schema: bool) -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}
    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}
    if not with_schema:
        return {"ok": True}

    applied, head = schema_revisions(DB.engine)
    current = head is None or applied == head
    return {
        "ok": current,
        "schema_revision": applied,
        "schema_expected": head,
        "schema_up_to_date": current,
    }


def _text_generation_status() -> dict:
    breaker = llm_circuit_breaker.status()
    if config.LLM_PROVIDER == "none":
        state = "disabled"
    elif breaker.get("open"):
        state = "cooldown"
    elif not config.LLM_API_KEY:
        state = "unconfigured"
    else:
        state = "ready"
    return {
        "status": state,
        "provider": config.LLM_PROVIDER,
        "model": config.LLM_MODEL,
        "circuit_breaker": breaker,
    }


def _probe(with_schema: bool) -> dict:
    database = _database_status(with_schema)
    if not database.get("ok"):
        raise HTTPException(status_code=503, detail={"database": database})
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "database": database,
        "text_generation": _text_generation_status(),
    }


@router.get("/health")
async def health():
    """Cheap probe; the text generator being down does not fail it."""
    body = _probe(with_schema=False)
    body["version"] = SERVICE_VERSION
    body["instance_id"] = os.environ.get("DESKMEM_INSTANCE_ID", "deskmem-1")
    return body


@router.get("/health/deps")
async def health_deps():
    return _probe(with_schema=True)
