"""
db_agent capabilities: store, search, fetch and update memory items.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import core.config as config
from core.context import TurnContext, log_fields
from core.errors import NotFound, ValidationIssue
from core.models import MEMORY_KINDS
from core.services.memory_pipeline import MemoryPipeline
from core.services.memory_shared import to_rfc3339, utc_now
from core.services.memory_stores import MemoryItem, SearchFilter, SearchOptions
from core.services.tool_registry import Capability
from core.services.tool_schema import ObjectSchema, PropertySchema, ToolArguments
from core.validators import (
    parse_iso8601,
    validate_memory_kind,
    validate_metadata,
    validate_optional_text,
    validate_required_text,
    validate_string_list,
)

logger = config.logger

AGENT_NAME = "db_agent"
SEARCH_DEFAULT_TOP_K = 5
SEARCH_MIN_SCORE = 0.7

_TAGS_SCHEMA = PropertySchema(
    type="array",
    description="Tags to categorize the item (optional)",
    items=PropertySchema(type="string"),
)


def _string_list(values: Optional[list], field: str) -> list[str]:
    if not values:
        return []
    validate_string_list(values, field)
    return list(values)


class MemoryTools:
    """Handlers bound to one tenant's memory pipeline."""

    def __init__(self, pipeline: MemoryPipeline):
        self.pipeline = pipeline

    async def upsert_item(self, context: TurnContext, args: ToolArguments) -> dict:
        kind = args.get_str("kind")
        text = args.get_str("text")
        when = args.get_str("when")
        validate_memory_kind(kind)
        validate_required_text(text, "text", config.MAX_TEXT_LENGTH)
        tags = _string_list(args.get_list("tags"), "tags")

        metadata: dict = {"created_at": to_rfc3339(utc_now().replace(microsecond=0))}
        if when:
            metadata["when"] = to_rfc3339(parse_iso8601(when, "when"))
        if tags:
            metadata["tags"] = tags
        validate_metadata(metadata, "metadata")

        memory_id = await self.pipeline.store(
            context.tenant_id,
            context.user_id,
            MemoryItem(kind=kind, text=text, metadata=metadata),
        )
        logger.info("memory_tool_stored", extra={"kind": kind, "memory_id": memory_id, **log_fields(context)})
        return {
            "id": memory_id,
            "status": "stored",
            "kind": kind,
            "text": text,
            "when": when or "",
            "tags": tags,
        }

    async def search(self, context: TurnContext, args: ToolArguments) -> dict:
        query = args.get_str("query")
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        top_k = args.get_int("top_k", SEARCH_DEFAULT_TOP_K)
        if top_k <= 0:
            top_k = SEARCH_DEFAULT_TOP_K
        top_k = min(top_k, config.MAX_SEARCH_TOP_K)

        search_filter = None
        raw_filter = args.get_object("filter")
        if raw_filter:
            kinds = _string_list(raw_filter.get("kind"), "filter.kind")
            for kind in kinds:
                validate_memory_kind(kind, field="filter.kind")
            search_filter = SearchFilter(kinds=kinds, tags=_string_list(raw_filter.get("tags"), "filter.tags"))

        options = SearchOptions(top_k=top_k, min_score=SEARCH_MIN_SCORE, filter=search_filter)
        hits = await self.pipeline.search(context.tenant_id, context.user_id, query, options)
        return {
            "items": [hit.to_dict() for hit in hits],
            "query": query,
            "total_found": len(hits),
            "search_options": {
                "top_k": top_k,
                "min_score": SEARCH_MIN_SCORE,
                "filter": {
                    "kind": search_filter.kinds,
                    "tags": search_filter.tags,
                } if search_filter else None,
            },
        }

    async def get_by_id(self, context: TurnContext, args: ToolArguments) -> dict:
        memory_id = args.get_str("id")
        try:
            record = await _run_store(
                self.pipeline.memory_store.get_by_id,
                context.tenant_id,
                context.user_id,
                memory_id,
            )
        except NotFound:
            return {"found": False, "id": memory_id}
        return {"found": True, **record.to_dict()}

    async def update_item(self, context: TurnContext, args: ToolArguments) -> dict:
        memory_id = args.get_str("id")
        updates = args.get_object("updates") or {}
        if not updates:
            raise ValidationIssue("no updates provided", field="updates", error_type="required")

        fields: dict = {}
        if "text" in updates:
            validate_required_text(updates["text"], "updates.text", config.MAX_TEXT_LENGTH)
            fields["text"] = updates["text"]

        metadata_changes: dict = {}
        if "when" in updates:
            validate_optional_text(updates["when"], "updates.when", config.MAX_SHORT_TEXT_LENGTH)
            metadata_changes["when"] = to_rfc3339(parse_iso8601(updates["when"], "updates.when"))
        if "tags" in updates:
            metadata_changes["tags"] = _string_list(updates["tags"], "updates.tags")
        if metadata_changes:
            current = await _run_store(
                self.pipeline.memory_store.get_by_id,
                context.tenant_id,
                context.user_id,
                memory_id,
            )
            merged = dict(current.metadata)
            merged.update(metadata_changes)
            merged["updated_at"] = to_rfc3339(utc_now().replace(microsecond=0))
            fields["metadata"] = merged

        if not fields:
            raise ValidationIssue(
                "updates must include text, when or tags",
                field="updates",
                error_type="required",
            )

        await self.pipeline.update(context.tenant_id, context.user_id, memory_id, fields)
        logger.info(
            "memory_tool_updated",
            extra={"memory_id": memory_id, "fields": sorted(fields), **log_fields(context)},
        )
        return {"ok": True, "id": memory_id, "updates": updates}


async def _run_store(func, *args):
    return await asyncio.to_thread(func, *args)


def build_memory_capabilities(pipeline: MemoryPipeline) -> list[Capability]:
    tools = MemoryTools(pipeline)
    return [
        Capability(
            name="upsert_item",
            description="Store a note, event, task or message in the user's memory.",
            parameters=ObjectSchema(
                properties={
                    "kind": PropertySchema(
                        type="string",
                        description="Type of memory item: note, event, task, or msg",
                        enum=MEMORY_KINDS,
                    ),
                    "text": PropertySchema(type="string", description="The content text of the memory item"),
                    "when": PropertySchema(type="string", description="ISO8601 timestamp for events/tasks (optional)"),
                    "tags": _TAGS_SCHEMA,
                },
                required=("kind", "text"),
            ),
            handler=tools.upsert_item,
            agent=AGENT_NAME,
        ),
        Capability(
            name="search",
            description="Search the user's memory for relevant notes, events, tasks and messages.",
            parameters=ObjectSchema(
                properties={
                    "query": PropertySchema(type="string", description="Search query to find relevant memory items"),
                    "top_k": PropertySchema(
                        type="integer",
                        description="Number of results to return (default: 5, max: 20)",
                    ),
                    "filter": PropertySchema(
                        type="object",
                        description="Optional filters to apply",
                        properties={
                            "kind": PropertySchema(
                                type="array",
                                description="Filter by memory item types",
                                items=PropertySchema(type="string", enum=MEMORY_KINDS),
                            ),
                            "tags": PropertySchema(
                                type="array",
                                description="Filter by tags",
                                items=PropertySchema(type="string"),
                            ),
                        },
                    ),
                },
                required=("query",),
            ),
            handler=tools.search,
            agent=AGENT_NAME,
        ),
        Capability(
            name="get_by_id",
            description="Fetch one memory item by its id.",
            parameters=ObjectSchema(
                properties={"id": PropertySchema(type="string", description="UUID of the memory item to retrieve")},
                required=("id",),
            ),
            handler=tools.get_by_id,
            agent=AGENT_NAME,
        ),
        Capability(
            name="update_item",
            description="Update the text, time or tags of an existing memory item.",
            parameters=ObjectSchema(
                properties={
                    "id": PropertySchema(type="string", description="UUID of the memory item to update"),
                    "updates": PropertySchema(
                        type="object",
                        description="Fields to update",
                        properties={
                            "text": PropertySchema(type="string", description="Update the text content"),
                            "when": PropertySchema(type="string", description="Update the timestamp (ISO8601)"),
                            "tags": PropertySchema(
                                type="array",
                                description="Update the tags",
                                items=PropertySchema(type="string"),
                            ),
                        },
                    ),
                },
                required=("id", "updates"),
            ),
            handler=tools.update_item,
            agent=AGENT_NAME,
        ),
    ]
