"""
Turn-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import contextvars
import uuid

from core.errors import ValidationIssue


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str

    @staticmethod
    def from_values(tenant_id: Optional[str], user_id: Optional[str]) -> "TenantContext":
        if not tenant_id:
            raise ValidationIssue(
                "tenant_id is required for this operation",
                field="tenant_id",
                error_type="required",
            )
        if not user_id:
            raise ValidationIssue(
                "user_id is required for this operation",
                field="user_id",
                error_type="required",
            )
        return TenantContext(tenant_id=str(tenant_id), user_id=str(user_id))


@dataclass(frozen=True)
class TurnContext:
    """Identity of one inbound turn, handed to every capability invocation."""

    tenant: TenantContext
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    source: Optional[str] = None

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def user_id(self) -> str:
        return self.tenant.user_id


_CURRENT_TURN_CONTEXT: contextvars.ContextVar[Optional["TurnContext"]] = contextvars.ContextVar(
    "assistgate_turn_context",
    default=None,
)


def get_current_turn_context() -> Optional["TurnContext"]:
    return _CURRENT_TURN_CONTEXT.get()


def set_current_turn_context(context: Optional["TurnContext"]) -> contextvars.Token:
    return _CURRENT_TURN_CONTEXT.set(context)


def reset_current_turn_context(token: contextvars.Token) -> None:
    _CURRENT_TURN_CONTEXT.reset(token)


def log_fields(context: Optional["TurnContext"] = None) -> dict:
    """Structured logging fields for the given (or current) turn."""
    ctx = context or get_current_turn_context()
    if ctx is None:
        return {}
    return {
        "tenant_id": ctx.tenant_id,
        "user_id": ctx.user_id,
        "request_id": ctx.request_id,
    }


__all__ = [
    "TenantContext",
    "TurnContext",
    "get_current_turn_context",
    "set_current_turn_context",
    "reset_current_turn_context",
    "log_fields",
]
