"""
Capability registry: registration, argument validation and dispatch.
"""

from __future__ import annotations

import inspect
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

import core.config as config
from core.context import TurnContext, log_fields
from core.errors import (
    DuplicateCapability,
    InvalidEnumValue,
    MissingRequiredField,
    NotFound,
    TypeMismatch,
    ValidationIssue,
)
from core.services.tool_schema import (
    ObjectSchema,
    StringValue,
    ToolArguments,
    matches_type,
)

logger = config.logger

ToolHandler = Callable[[TurnContext, ToolArguments], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    parameters: ObjectSchema
    handler: ToolHandler = field(compare=False)
    agent: Optional[str] = None


@dataclass
class ToolResult:
    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"tool_name": self.tool_name, "success": self.success}
        if self.success:
            payload["result"] = self.result
        else:
            payload["error"] = self.error
        return payload


class CapabilityRegistry:
    """Named capabilities for one process or tenant scope."""

    def __init__(self, capabilities: Optional[Iterable[Capability]] = None):
        self._capabilities: dict[str, Capability] = {}
        self._lock = threading.Lock()
        for capability in capabilities or ():
            self.register(capability)

    def register(self, capability: Capability) -> None:
        with self._lock:
            if capability.name in self._capabilities:
                raise DuplicateCapability(f"tool {capability.name} already registered")
            self._capabilities[capability.name] = capability
        logger.debug("tool_registered", extra={"tool": capability.name, "agent": capability.agent})

    def get(self, name: str) -> Capability:
        with self._lock:
            capability = self._capabilities.get(name)
        if capability is None:
            raise NotFound(f"tool {name} not found", resource="tool", resource_id=name)
        return capability

    def list_all(self) -> list[Capability]:
        with self._lock:
            return [self._capabilities[name] for name in sorted(self._capabilities)]

    def list_for_tenant(self, tenant_id: str) -> list[Capability]:
        # Which capabilities a tenant may use is decided by TenantResourceManager.
        return self.list_all()

    def validate_arguments(self, name: str, args: Mapping[str, Any]) -> ToolArguments:
        """Check required fields, declared types and enums; return typed arguments."""
        capability = self.get(name)
        arguments = args if isinstance(args, ToolArguments) else ToolArguments.from_raw(args)
        schema = capability.parameters

        for required in schema.required:
            if required not in arguments:
                raise MissingRequiredField(required)

        for prop_name, value in arguments.items():
            prop = schema.properties.get(prop_name)
            if prop is None:
                continue
            if not matches_type(value, prop.type):
                raise TypeMismatch(prop_name, prop.type, value.type_name)
            if prop.enum:
                if not isinstance(value, StringValue) or value.value not in prop.enum:
                    raise InvalidEnumValue(prop_name, value.value, list(prop.enum))
        return arguments

    async def dispatch(
        self,
        context: TurnContext,
        name: str,
        raw_arguments: Union[str, bytes, Mapping[str, Any], None],
    ) -> ToolResult:
        """Execute one tool call; failures are returned, never raised."""
        try:
            capability = self.get(name)
        except NotFound as exc:
            logger.warning("tool_not_found", extra={"tool": name, **log_fields(context)})
            return ToolResult(tool_name=name, success=False, error=str(exc))

        try:
            parsed = _parse_arguments(raw_arguments)
        except ValueError as exc:
            logger.info("tool_arguments_unparseable", extra={"tool": name, **log_fields(context)})
            return ToolResult(tool_name=name, success=False, error=f"failed to parse arguments: {exc}")

        try:
            arguments = self.validate_arguments(name, parsed)
        except ValidationIssue as exc:
            logger.info(
                "tool_validation_error",
                extra={"tool": name, "field": exc.field, "error_type": exc.error_type, **log_fields(context)},
            )
            return ToolResult(
                tool_name=name,
                success=False,
                error=f"validation failed for tool {name}: {exc}",
            )

        try:
            outcome = capability.handler(context, arguments)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.warning(
                "tool_execution_failed",
                extra={"tool": name, "error_type": type(exc).__name__, **log_fields(context)},
            )
            return ToolResult(tool_name=name, success=False, error=str(exc) or type(exc).__name__)

        return ToolResult(tool_name=name, success=True, result=outcome)

    def to_provider_format(self, names: Optional[Iterable[str]] = None) -> list[dict]:
        """Render capabilities as chat-completion tool definitions."""
        selected = self.list_all()
        if names is not None:
            wanted = set(names)
            selected = [capability for capability in selected if capability.name in wanted]
        return [
            {
                "type": "function",
                "function": {
                    "name": capability.name,
                    "description": capability.description,
                    "parameters": capability.parameters.to_provider_format(),
                },
            }
            for capability in selected
        ]


def _parse_arguments(raw: Union[str, bytes, Mapping[str, Any], None]) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ValueError(f"unsupported argument payload type {type(raw).__name__}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ValueError("arguments must be a JSON object")
    return parsed
