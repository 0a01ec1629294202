"""
Standalone FastAPI app wiring for AssistGate.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.services.agent_runtime import AgentRuntime
from core.services.tenant_manager import TenantResourceManager
from core.services.tenant_sources import build_tenant_source
from app.middleware import configure_middleware
from app.routes.health import router as health_router
from app.routes.tenants import router as tenants_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    manager = TenantResourceManager(
        build_tenant_source(DB.engine),
        isolation_mode=config.TENANT_ISOLATION_MODE,
        shared_engine=DB.engine,
    )
    app.state.engine = DB.engine
    app.state.manager = manager
    app.state.runtime = AgentRuntime(manager)
    try:
        yield
    finally:
        try:
            await manager.close()
        finally:
            if DB.engine:
                DB.engine.dispose()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title="AssistGate", redirect_slashes=False, lifespan=lifespan_handler)
    configure_middleware(app)
    app.include_router(health_router)
    app.include_router(tenants_router)
    return app


app = create_app()
