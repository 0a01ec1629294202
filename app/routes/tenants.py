"""
Tenant listing, reload and turn endpoints.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import core.config as config
from core.errors import InfrastructureError, NotFound, TurnCancelled, ValidationIssue
from core.services.agent_runtime import AgentRuntime
from core.services.tenant_manager import TenantResourceManager
from app.deps import get_manager, get_runtime


router = APIRouter(prefix="/tenants")

APOLOGY = "I'm sorry, I couldn't process your message right now. Please try again later."


class TurnRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    text: str = Field(min_length=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


@router.get("")
async def list_tenants(manager: TenantResourceManager = Depends(get_manager)):
    tenants = await asyncio.to_thread(manager.list_all)
    return {"count": len(tenants), "tenants": [tenant.to_dict() for tenant in tenants]}


@router.post("/reload")
async def reload_tenants(manager: TenantResourceManager = Depends(get_manager)):
    try:
        await manager.reload()
    except ValidationIssue as exc:
        raise HTTPException(status_code=422, detail={"error": str(exc), "field": exc.field}) from exc
    except InfrastructureError as exc:
        config.logger.error("tenant_reload_failed", extra={"error": str(exc)})
        raise HTTPException(status_code=503, detail={"error": "tenant reload failed"}) from exc
    stats = await asyncio.to_thread(manager.stats)
    return {"status": "reloaded", **stats}


@router.post("/{routing_key}/turns")
async def post_turn(
    routing_key: str,
    body: TurnRequest,
    runtime: AgentRuntime = Depends(get_runtime),
):
    try:
        result = await runtime.handle_turn(
            routing_key,
            body.user_id,
            body.text,
            timeout=body.timeout_seconds,
        )
    except NotFound as exc:
        raise HTTPException(status_code=404, detail={"error": str(exc), "resource": exc.resource}) from exc
    except ValidationIssue as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc), "field": exc.field}) from exc
    except TurnCancelled as exc:
        config.logger.warning("turn_cancelled", extra={"routing_key": routing_key, "error": str(exc)})
        raise HTTPException(status_code=504, detail={"error": "turn timed out", "reply": APOLOGY}) from exc
    except InfrastructureError as exc:
        config.logger.error(
            "turn_failed",
            extra={"routing_key": routing_key, "error_type": type(exc).__name__, "error": str(exc)},
        )
        raise HTTPException(status_code=503, detail={"error": type(exc).__name__, "reply": APOLOGY}) from exc
    return {"reply": result.reply, "metadata": result.metadata}
