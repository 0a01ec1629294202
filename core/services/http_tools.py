"""
http_agent capabilities: calls to tenant-configured external services and
reminder scheduling.
"""

from __future__ import annotations

import json
import time
from typing import Any, Mapping, Optional

import httpx

import core.config as config
from core.context import TurnContext, log_fields
from core.errors import NotFound, ValidationIssue
from core.services.memory_shared import to_rfc3339, utc_now
from core.services.tool_registry import Capability
from core.services.tool_schema import ObjectSchema, PropertySchema, ToolArguments
from core.validators import parse_iso8601

logger = config.logger

AGENT_NAME = "http_agent"
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
BODY_METHODS = {"POST", "PUT", "PATCH"}
REMINDER_CHANNELS = ("whatsapp", "email", "sms")
USER_AGENT = "assistgate/1.0"


def _apply_auth(headers: dict, auth: Mapping[str, Any]) -> Optional[httpx.BasicAuth]:
    auth_type = auth.get("type")
    if auth_type == "bearer" and isinstance(auth.get("token"), str):
        headers["Authorization"] = f"Bearer {auth['token']}"
    elif auth_type == "api_key" and isinstance(auth.get("api_key"), str):
        headers[auth.get("header") or "X-API-Key"] = auth["api_key"]
    elif auth_type == "basic":
        username, password = auth.get("username"), auth.get("password")
        if isinstance(username, str) and isinstance(password, str):
            return httpx.BasicAuth(username, password)
    return None


class HttpTools:
    """Handlers for one tenant's external services."""

    def __init__(
        self,
        services: Optional[Mapping[str, Mapping[str, Any]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.services = dict(services or {})
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(config.HTTP_TOOL_TIMEOUT_SECONDS))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def call_api(self, context: TurnContext, args: ToolArguments) -> dict:
        started = time.monotonic()
        service_name = args.get_str("service_name")
        method = args.get_str("method")
        path = args.get_str("path") or ""
        extra_headers = args.get_object("headers") or {}
        query = args.get_object("query") or {}
        body = args.get_object("body") or {}

        service = self.services.get(service_name)
        if not service or not service.get("base_url"):
            raise NotFound(
                f"service '{service_name}' not configured for tenant",
                resource="external_service",
                resource_id=service_name,
            )

        url = str(service["base_url"]).rstrip("/") + "/" + path.lstrip("/")
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        headers.update({key: str(value) for key, value in extra_headers.items()})
        basic_auth = _apply_auth(headers, service.get("auth") or {})

        request_kwargs: dict[str, Any] = {"headers": headers}
        if query:
            request_kwargs["params"] = {key: str(value) for key, value in query.items()}
        if body and method in BODY_METHODS:
            request_kwargs["json"] = body
        if basic_auth is not None:
            request_kwargs["auth"] = basic_auth

        try:
            response = await self._get_client().request(method, url, **request_kwargs)
        except httpx.RequestError as exc:
            logger.error(
                "http_tool_call_failed",
                extra={"service": service_name, "method": method, "error": type(exc).__name__, **log_fields(context)},
            )
            raise RuntimeError(f"HTTP request failed: {exc}") from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        response_body: Any = None
        if response.content:
            if "application/json" in response.headers.get("content-type", ""):
                try:
                    response_body = response.json()
                except json.JSONDecodeError:
                    response_body = response.text
            else:
                response_body = response.text

        log_extra = {
            "service": service_name,
            "method": method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            **log_fields(context),
        }
        if response.is_success:
            logger.debug("http_tool_call_completed", extra=log_extra)
        else:
            logger.warning("http_tool_call_error_status", extra=log_extra)

        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": response_body,
            "duration": duration_ms,
            "request": {"method": method, "url": str(response.request.url), "service": service_name},
        }

    async def schedule_reminder(self, context: TurnContext, args: ToolArguments) -> dict:
        item_id = args.get_str("item_id")
        channel = args.get_str("channel")
        scheduled = parse_iso8601(args.get_str("when"), "when")
        now = utc_now()
        if scheduled <= now:
            raise ValidationIssue(
                "scheduled time must be in the future",
                field="when",
                error_type="out_of_range",
            )

        scheduled_at = to_rfc3339(scheduled)
        # Reminders are recorded only; delivery belongs to the messaging layer.
        logger.info(
            "reminder_scheduled",
            extra={"item_id": item_id, "scheduled_at": scheduled_at, "channel": channel, **log_fields(context)},
        )
        return {
            "scheduled_at": scheduled_at,
            "item_id": item_id,
            "channel": channel,
            "status": "scheduled",
            "reminder_id": f"reminder_{int(now.timestamp())}",
            "note": "Reminder recorded; delivery is handled by the messaging integration.",
        }


def build_http_capabilities(tools: HttpTools) -> list[Capability]:
    return [
        Capability(
            name="call_api",
            description="Call an external HTTP service configured for this tenant.",
            parameters=ObjectSchema(
                properties={
                    "service_name": PropertySchema(
                        type="string",
                        description="Name of the external service configured for this tenant",
                    ),
                    "method": PropertySchema(type="string", description="HTTP method to use", enum=HTTP_METHODS),
                    "path": PropertySchema(
                        type="string",
                        description="API endpoint path (relative to service base URL)",
                    ),
                    "headers": PropertySchema(type="object", description="Additional headers to send (optional)"),
                    "query": PropertySchema(type="object", description="Query parameters (optional)"),
                    "body": PropertySchema(type="object", description="Request body for POST/PUT/PATCH (optional)"),
                },
                required=("service_name", "method", "path"),
            ),
            handler=tools.call_api,
            agent=AGENT_NAME,
        ),
        Capability(
            name="schedule_reminder",
            description="Schedule a reminder about a memory item.",
            parameters=ObjectSchema(
                properties={
                    "item_id": PropertySchema(type="string", description="UUID of the memory item to remind about"),
                    "when": PropertySchema(type="string", description="ISO8601 timestamp when to send the reminder"),
                    "channel": PropertySchema(
                        type="string",
                        description="Channel to send reminder through",
                        enum=REMINDER_CHANNELS,
                    ),
                },
                required=("item_id", "when", "channel"),
            ),
            handler=tools.schedule_reminder,
            agent=AGENT_NAME,
        ),
    ]
