import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from core.context import TenantContext, TurnContext
from core.errors import NotFound, ValidationIssue
from core.services.http_tools import HttpTools, build_http_capabilities
from core.services.memory_shared import to_rfc3339, utc_now
from core.services.tool_registry import CapabilityRegistry
from core.services.tool_schema import ToolArguments

SERVICES = {
    "weather": {"base_url": "https://weather.test/v1/", "auth": {"type": "bearer", "token": "secret-token"}},
    "crm": {"base_url": "https://crm.test", "auth": {"type": "api_key", "api_key": "k-123", "header": "X-CRM-Key"}},
    "legacy": {"base_url": "https://legacy.test", "auth": {"type": "basic", "username": "u", "password": "p"}},
}


def _context() -> TurnContext:
    return TurnContext(tenant=TenantContext.from_values("tenant_a", "user-1"))


def _tools(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTools(SERVICES, client=client)


def test_call_api_builds_authenticated_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["accept"] = request.headers.get("accept")
        return httpx.Response(200, json={"temp": 21})

    tools = _tools(handler)
    args = ToolArguments.from_raw(
        {"service_name": "weather", "method": "GET", "path": "/current", "query": {"city": "Oslo"}}
    )
    result = asyncio.run(tools.call_api(_context(), args))

    assert seen["url"] == "https://weather.test/v1/current?city=Oslo"
    assert seen["auth"] == "Bearer secret-token"
    assert seen["accept"] == "application/json"
    assert result["status"] == 200
    assert result["body"] == {"temp": 21}
    assert result["request"] == {
        "method": "GET",
        "url": "https://weather.test/v1/current?city=Oslo",
        "service": "weather",
    }


def test_call_api_sends_json_body_and_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("x-crm-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, text="created")

    tools = _tools(handler)
    args = ToolArguments.from_raw(
        {"service_name": "crm", "method": "POST", "path": "contacts", "body": {"name": "Ada"}}
    )
    result = asyncio.run(tools.call_api(_context(), args))

    assert seen == {"key": "k-123", "body": {"name": "Ada"}}
    assert result["status"] == 201
    assert result["body"] == "created"


def test_call_api_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(204)

    tools = _tools(handler)
    args = ToolArguments.from_raw({"service_name": "legacy", "method": "DELETE", "path": "/items/1"})
    result = asyncio.run(tools.call_api(_context(), args))
    assert seen["auth"].startswith("Basic ")
    assert result["body"] is None


def test_call_api_unknown_service():
    tools = _tools(lambda request: httpx.Response(200))
    args = ToolArguments.from_raw({"service_name": "nope", "method": "GET", "path": "/"})
    with pytest.raises(NotFound):
        asyncio.run(tools.call_api(_context(), args))


def test_call_api_transport_error_is_failed_tool_result():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    registry = CapabilityRegistry(build_http_capabilities(_tools(handler)))
    result = asyncio.run(
        registry.dispatch(_context(), "call_api", {"service_name": "weather", "method": "GET", "path": "/"})
    )
    assert not result.success
    assert result.error.startswith("HTTP request failed")


def test_method_enum_enforced():
    registry = CapabilityRegistry(build_http_capabilities(_tools(lambda request: httpx.Response(200))))
    result = asyncio.run(
        registry.dispatch(_context(), "call_api", {"service_name": "weather", "method": "TRACE", "path": "/"})
    )
    assert not result.success


def test_schedule_reminder():
    tools = HttpTools({})
    when = to_rfc3339((utc_now() + timedelta(hours=1)).replace(microsecond=0))
    args = ToolArguments.from_raw({"item_id": "abc", "when": when, "channel": "email"})
    result = asyncio.run(tools.schedule_reminder(_context(), args))
    assert result["status"] == "scheduled"
    assert result["scheduled_at"] == when
    assert result["reminder_id"].startswith("reminder_")


def test_schedule_reminder_rejects_past_time():
    tools = HttpTools({})
    args = ToolArguments.from_raw({"item_id": "abc", "when": "2000-01-01T00:00:00Z", "channel": "sms"})
    with pytest.raises(ValidationIssue):
        asyncio.run(tools.schedule_reminder(_context(), args))


def test_close_leaves_injected_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    tools = HttpTools(SERVICES, client=client)
    asyncio.run(tools.close())
    assert not client.is_closed
