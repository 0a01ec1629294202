"""
Turn orchestration: memory retrieval, the tool gate and the tool-calling loop.

One call to Orchestrator.process_turn handles one inbound user message:

    Received -> ContextAssembled -> DirectAnswer | ToolLoop -> Answered

The transcript and iteration counter live in a TurnState owned by that call.
Tool failures are fed back to the model; completion, embedding and storage
failures abort the turn.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

import core.config as config
from core.context import (
    TenantContext,
    TurnContext,
    log_fields,
    reset_current_turn_context,
    set_current_turn_context,
)
from core.errors import TurnCancelled
from core.services.intent import IntentClassifier, KeywordIntentClassifier
from core.services.llm_providers import ChatMessage, ChatProvider, TokenUsage
from core.services.memory_pipeline import MemoryPipeline
from core.services.memory_shared import utc_now
from core.services.memory_stores import MemoryHit, SearchOptions
from core.services.prompts import build_system_prompt
from core.services.tool_registry import CapabilityRegistry, ToolResult
from core.validators import validate_required_text

logger = config.logger

PARTIAL_REPLY = (
    "I was able to process your request partially, but reached the maximum "
    "number of tool calls allowed."
)
WARNING_MAX_TOOL_CALLS = "reached_max_tool_calls"


@dataclass
class OrchestratorConfig:
    max_tokens: int = config.ORCHESTRATOR_MAX_TOKENS
    temperature: float = config.ORCHESTRATOR_TEMPERATURE
    max_tool_calls: int = config.ORCHESTRATOR_MAX_TOOL_CALLS
    enable_rag: bool = config.ORCHESTRATOR_ENABLE_RAG
    rag_top_k: int = config.RAG_TOP_K
    rag_min_score: float = config.RAG_MIN_SCORE
    context_tokens: int = config.RAG_MAX_CONTEXT_TOKENS


@dataclass
class TurnState:
    messages: list[ChatMessage] = field(default_factory=list)
    iterations: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class TurnResult:
    reply: str
    metadata: dict


def tool_message_content(result: ToolResult) -> str:
    if not result.success:
        return f"Error: {result.error}"
    if isinstance(result.result, str):
        return result.result
    return json.dumps(result.result, default=str)


class Orchestrator:
    def __init__(
        self,
        registry: CapabilityRegistry,
        provider: ChatProvider,
        pipeline: Optional[MemoryPipeline] = None,
        *,
        orchestrator_config: Optional[OrchestratorConfig] = None,
        classifier: Optional[IntentClassifier] = None,
        tenant_name: Optional[str] = None,
        clock: Callable = utc_now,
    ):
        self.registry = registry
        self.provider = provider
        self.pipeline = pipeline
        self.config = orchestrator_config or OrchestratorConfig()
        self.classifier = classifier or KeywordIntentClassifier()
        self.tenant_name = tenant_name
        self._clock = clock

    async def process_turn(
        self,
        tenant_id: str,
        user_id: str,
        text: str,
        *,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> TurnResult:
        """Answer one user message; timeout (seconds) aborts with TurnCancelled."""
        tenant = TenantContext.from_values(tenant_id, user_id)
        validate_required_text(text, "text", config.MAX_TEXT_LENGTH)
        context = TurnContext(tenant=tenant, request_id=request_id or uuid.uuid4().hex, source="orchestrator")

        if timeout is None:
            return await self._run_turn(context, text)
        try:
            return await asyncio.wait_for(self._run_turn(context, text), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("turn_timed_out", extra={"timeout_seconds": timeout, **log_fields(context)})
            raise TurnCancelled(f"turn exceeded its deadline of {timeout}s") from exc

    async def _run_turn(self, context: TurnContext, text: str) -> TurnResult:
        token = set_current_turn_context(context)
        started = time.monotonic()
        try:
            intent = self.classifier.classify(text)
            hits = await self._retrieve(context, text)
            use_tools = self.classifier.needs_tools(text, intent)
            tool_names = [capability.name for capability in self.registry.list_for_tenant(context.tenant_id)]
            system_prompt = build_system_prompt(
                tenant_name=self.tenant_name or context.tenant_id,
                user_name=context.user_id,
                now=self._clock(),
                tool_names=tool_names if use_tools else (),
                memory_context=self._context_block(hits),
                intent=intent,
            )
            state = TurnState(
                messages=[
                    ChatMessage(role="system", content=system_prompt),
                    ChatMessage(role="user", content=text),
                ]
            )
            logger.debug(
                "turn_context_assembled",
                extra={"intent": intent, "memory_hits": len(hits), "use_tools": use_tools, **log_fields(context)},
            )

            if use_tools and tool_names:
                result = await self._tool_loop(context, state, tool_names)
            else:
                result = await self._direct_answer(state, len(hits))
            result.metadata["intent"] = intent

            logger.info(
                "turn_completed",
                extra={
                    "type": result.metadata["type"],
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    **log_fields(context),
                },
            )
            return result
        finally:
            reset_current_turn_context(token)

    async def _retrieve(self, context: TurnContext, text: str) -> list[MemoryHit]:
        if not self.config.enable_rag or self.pipeline is None:
            return []
        options = SearchOptions(top_k=self.config.rag_top_k, min_score=self.config.rag_min_score)
        return await self.pipeline.search(context.tenant_id, context.user_id, text, options)

    def _context_block(self, hits: list[MemoryHit]) -> str:
        if not hits or self.pipeline is None:
            return ""
        return self.pipeline.build_context(hits, self.config.context_tokens)

    async def _direct_answer(self, state: TurnState, memory_hits: int) -> TurnResult:
        completion = await self.provider.complete(
            state.messages,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        state.usage.add(completion.usage)
        return TurnResult(
            reply=completion.message.content,
            metadata={
                "type": "conversational",
                "memory_context": memory_hits,
                "token_usage": state.usage.to_dict(),
            },
        )

    async def _tool_loop(self, context: TurnContext, state: TurnState, tool_names: list[str]) -> TurnResult:
        tools = self.registry.to_provider_format(tool_names)
        max_iterations = self.config.max_tool_calls

        while state.iterations < max_iterations:
            completion = await self.provider.complete(
                state.messages,
                tools,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                tool_choice="auto",
            )
            state.iterations += 1
            state.usage.add(completion.usage)
            message = completion.message
            state.messages.append(message)

            if not message.tool_calls:
                return TurnResult(
                    reply=message.content,
                    metadata={
                        "type": "tool_assisted",
                        "iterations": state.iterations,
                        "tool_results": [result.to_dict() for result in state.tool_results],
                        "token_usage": state.usage.to_dict(),
                    },
                )

            for call in message.tool_calls:
                logger.debug(
                    "tool_call_requested",
                    extra={"tool": call.function.name, "iteration": state.iterations, **log_fields(context)},
                )
                result = await self.registry.dispatch(context, call.function.name, call.function.arguments)
                state.tool_results.append(result)
                state.messages.append(
                    ChatMessage(
                        role="tool",
                        content=tool_message_content(result),
                        tool_call_id=call.id,
                        name=call.function.name,
                    )
                )

        logger.warning(
            "turn_reached_max_tool_calls",
            extra={"max_iterations": max_iterations, "tool_calls": len(state.tool_results), **log_fields(context)},
        )
        return TurnResult(
            reply=PARTIAL_REPLY,
            metadata={
                "type": "tool_assisted_partial",
                "max_iterations": max_iterations,
                "tool_results": [result.to_dict() for result in state.tool_results],
                "warning": WARNING_MAX_TOOL_CALLS,
                "token_usage": state.usage.to_dict(),
            },
        )
