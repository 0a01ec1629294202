import asyncio
import uuid

from core.context import TenantContext, TurnContext
from core.services.memory_tools import build_memory_capabilities
from core.services.tool_registry import CapabilityRegistry
from conftest import TENANT_ID, USER_ID


def _context() -> TurnContext:
    return TurnContext(tenant=TenantContext.from_values(TENANT_ID, USER_ID))


def _call(registry, name, arguments):
    return asyncio.run(registry.dispatch(_context(), name, arguments))


def test_memory_capability_names(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    assert [capability.name for capability in registry.list_all()] == [
        "get_by_id",
        "search",
        "update_item",
        "upsert_item",
    ]
    assert all(capability.agent == "db_agent" for capability in registry.list_all())


def test_upsert_search_and_fetch(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    stored = _call(
        registry,
        "upsert_item",
        {"kind": "event", "text": "Dentist appointment Friday 3pm", "when": "2030-01-04T15:00:00Z", "tags": ["health"]},
    )
    assert stored.success, stored.error
    assert stored.result["status"] == "stored"
    assert stored.result["tags"] == ["health"]

    found = _call(registry, "search", {"query": "dentist", "filter": {"kind": ["event"]}})
    assert found.success, found.error
    assert found.result["total_found"] == 1
    assert found.result["items"][0]["id"] == stored.result["id"]
    assert found.result["search_options"]["filter"] == {"kind": ["event"], "tags": []}

    fetched = _call(registry, "get_by_id", {"id": stored.result["id"]})
    assert fetched.result["found"] is True
    assert fetched.result["metadata"]["when"] == "2030-01-04T15:00:00Z"


def test_get_by_id_not_found_is_a_successful_result(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    missing_id = str(uuid.uuid4())
    result = _call(registry, "get_by_id", {"id": missing_id})
    assert result.success
    assert result.result == {"found": False, "id": missing_id}


def test_update_item_merges_metadata(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    stored = _call(registry, "upsert_item", {"kind": "task", "text": "Call the plumber", "tags": ["home"]})
    memory_id = stored.result["id"]

    updated = _call(
        registry,
        "update_item",
        {"id": memory_id, "updates": {"text": "Call the plumber tomorrow", "tags": ["home", "urgent"]}},
    )
    assert updated.success, updated.error
    assert updated.result["ok"] is True

    record = _call(registry, "get_by_id", {"id": memory_id}).result
    assert record["text"] == "Call the plumber tomorrow"
    assert record["metadata"]["tags"] == ["home", "urgent"]
    assert "created_at" in record["metadata"]
    assert "updated_at" in record["metadata"]


def test_update_item_requires_updates(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    result = _call(registry, "update_item", {"id": str(uuid.uuid4()), "updates": {}})
    assert not result.success
    assert result.error == "no updates provided"


def test_invalid_kind_rejected_by_schema(pipeline):
    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    result = _call(registry, "upsert_item", {"kind": "diary", "text": "x"})
    assert not result.success
    assert "must be one of" in result.error
