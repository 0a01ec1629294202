"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from core.services.agent_runtime import AgentRuntime
from core.services.tenant_manager import TenantResourceManager


def get_manager(request: Request) -> TenantResourceManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="tenant manager not initialized")
    return manager


def get_runtime(request: Request) -> AgentRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="agent runtime not initialized")
    return runtime
