"""
Batch job entry points and in-process single-flight coordination.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Optional

from deskmem.config import logger
from deskmem.errors import ConflictError
from deskmem.models import Tenant
from deskmem.services.archival import ArchivalPipeline, stop_requested
from deskmem.services.profiles import ProfileRefresher
from deskmem.services.shared import resolve_session_factory

JOB_ARCHIVAL = "archival"
JOB_PROFILE_REFRESH = "profile_refresh"


class TenantJobGuard:
    """Allows one run of a given job per tenant at a time within this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._running: set[tuple[str, str]] = set()

    @contextmanager
    def hold(self, job: str, tenant_id: str):
        key = (job, tenant_id)
        with self._lock:
            if key in self._running:
                raise ConflictError(f"{job} already running for tenant {tenant_id}")
            self._running.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._running.discard(key)

    def is_running(self, job: str, tenant_id: str) -> bool:
        with self._lock:
            return (job, tenant_id) in self._running


job_guard = TenantJobGuard()


def active_tenant_ids(session_factory: Optional[Callable] = None) -> list[str]:
    db = resolve_session_factory(session_factory)()
    try:
        rows = db.query(Tenant.id).filter(Tenant.active.is_(True)).order_by(Tenant.id).all()
        return [row.id for row in rows]
    finally:
        db.close()


def run_archival(
    pipeline: ArchivalPipeline,
    tenant_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    retention_periods: Optional[int] = None,
    should_stop: Any = None,
    guard: Optional[TenantJobGuard] = None,
    session_factory: Optional[Callable] = None,
) -> list[dict]:
    """
    Scheduler entry point. With no tenant, every active tenant is archived in
    turn; a tenant whose run fails is reported and the others still run.
    """
    guard = guard or job_guard
    if tenant_id:
        with guard.hold(JOB_ARCHIVAL, tenant_id):
            report = pipeline.run(tenant_id, customer_id, retention_periods, should_stop)
        return [{"status": "ok", **report.to_dict()}]

    results = []
    for current_tenant in active_tenant_ids(session_factory):
        if stop_requested(should_stop):
            break
        try:
            with guard.hold(JOB_ARCHIVAL, current_tenant):
                report = pipeline.run(current_tenant, None, retention_periods, should_stop)
        except Exception as exc:
            logger.warning(
                "Archival run failed for tenant",
                extra={"tenant_id": current_tenant, "error_type": type(exc).__name__},
            )
            results.append({"status": "error", "tenant_id": current_tenant, "error": str(exc)})
            continue
        results.append({"status": "ok", **report.to_dict()})
    return results


def drain_profile_refreshes(
    refresher: ProfileRefresher,
    tenant_id: Optional[str] = None,
    limit: Optional[int] = None,
    guard: Optional[TenantJobGuard] = None,
) -> dict:
    guard = guard or job_guard
    with guard.hold(JOB_PROFILE_REFRESH, tenant_id or "*"):
        return refresher.drain(tenant_id, limit)
