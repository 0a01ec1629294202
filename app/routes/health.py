"""
Health endpoint.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB
from core.services.tenant_manager import TenantResourceManager
from app.deps import get_manager


router = APIRouter()


def _check_db_health(engine) -> dict:
    if engine is None:
        return {"ok": False, "error": "db_not_initialized"}
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"ok": False, "error": type(exc).__name__}
    return {"ok": True, "backend": config.DB_BACKEND_EFFECTIVE}


@router.get("/health")
async def health(request: Request, manager: TenantResourceManager = Depends(get_manager)):
    """Health check endpoint."""
    engine = getattr(request.app.state, "engine", None) or DB.engine
    db_health = await asyncio.to_thread(_check_db_health, engine)
    if not db_health["ok"]:
        raise HTTPException(status_code=503, detail={"database": db_health})

    stats = await asyncio.to_thread(manager.stats)
    return {
        "status": "healthy",
        "service": "AssistGate",
        "version": "0.1.0",
        "isolation_mode": manager.isolation_mode,
        "database": db_health,
        "tenants": stats,
    }
