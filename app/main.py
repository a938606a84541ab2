"""
Standalone FastAPI app wiring for DeskMemory.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

import deskmem.config as config
from deskmem.admin_commands import AdminServices
from deskmem.db import DB, init_db
from deskmem.jobs import drain_profile_refreshes
from deskmem.llm import build_text_generator
from app.deps import build_services
from app.middleware import configure_middleware
from app.routes.admin import router as admin_router
from app.routes.context import router as context_router
from app.routes.conversations import router as conversations_router
from app.routes.health import router as health_router
from app.routes.jobs import router as jobs_router
from app.routes.learning import router as learning_router
from app.routes.root import router as root_router


async def _reconcile_learning_metrics(app: FastAPI) -> None:
    try:
        await asyncio.to_thread(app.state.services.learning.reconcile_metrics)
    except Exception as exc:
        config.logger.warning(f"Learning metrics reconcile failed: {exc}")


async def _profile_refresh_loop(app: FastAPI) -> None:
    if config.PROFILE_REFRESH_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.PROFILE_REFRESH_INTERVAL_SECONDS)
        try:
            result = await asyncio.to_thread(drain_profile_refreshes, app.state.services.profiles)
            if result["refreshed"] or result["errored"]:
                config.logger.info("Profile refresh drain complete", extra=result)
        except Exception as exc:
            config.logger.warning(f"Profile refresh task error: {exc}")
        await _reconcile_learning_metrics(app)


def create_app(services: Optional[AdminServices] = None, init_database: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize on startup, cleanup on shutdown."""
        text_generator = None
        refresh_task = None
        if init_database:
            init_db()
        if services is None:
            text_generator = build_text_generator()
            app.state.services = build_services(text_generator)
        else:
            app.state.services = services
        await _reconcile_learning_metrics(app)
        if init_database and config.PROFILE_REFRESH_INTERVAL_SECONDS > 0:
            refresh_task = asyncio.create_task(_profile_refresh_loop(app))
        try:
            yield
        finally:
            if refresh_task:
                refresh_task.cancel()
                try:
                    await refresh_task
                except asyncio.CancelledError:
                    pass
            if text_generator is not None and hasattr(text_generator, "close"):
                text_generator.close()
            if init_database and DB.engine:
                DB.engine.dispose()

    app = FastAPI(title="DeskMemory", redirect_slashes=False, lifespan=lifespan)
    configure_middleware(app)

    app.include_router(health_router)
    app.include_router(root_router)
    app.include_router(conversations_router)
    app.include_router(context_router)
    app.include_router(learning_router)
    app.include_router(jobs_router)
    app.include_router(admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
