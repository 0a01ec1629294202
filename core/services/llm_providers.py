"""
Chat-completion and embedding providers.

The provider set is closed: "openai" speaks the OpenAI-compatible HTTP API
(OpenAI, DeepSeek or any compatible base URL), "bedrock" uses the Amazon
Bedrock runtime through boto3, and "mock" is a deterministic offline provider
for development and tests. A tenant's provider is chosen once, when the
tenant's resources are built.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence

import boto3
import httpx
import numpy as np
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

import core.config as config
from core.errors import CompletionFailed, EmbeddingFailed, ValidationIssue
from core.services.memory_shared import ProviderCircuitBreaker, async_sleep_backoff

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


# =============================================================================
# Message types
# =============================================================================

@dataclass(frozen=True)
class FunctionCall:
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolCall:
    id: str
    function: FunctionCall
    type: str = "function"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatMessage":
        calls = []
        for raw_call in data.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            arguments = function.get("arguments", "")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(
                ToolCall(
                    id=str(raw_call.get("id") or f"call_{uuid.uuid4().hex[:8]}"),
                    type=raw_call.get("type", "function"),
                    function=FunctionCall(name=str(function.get("name", "")), arguments=arguments),
                )
            )
        return cls(
            role=data.get("role", "assistant"),
            content=data.get("content") or "",
            tool_calls=calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Completion:
    message: ChatMessage
    usage: TokenUsage = field(default_factory=TokenUsage)


class ChatProvider(Protocol):
    name: str

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[list[dict]] = None,
        *,
        max_tokens: int,
        temperature: float,
        tool_choice: Optional[str] = None,
    ) -> Completion: ...

    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ProviderSettings:
    provider: str = config.LLM_PROVIDER
    api_key: Optional[str] = config.OPENAI_API_KEY
    base_url: str = config.LLM_BASE_URL
    chat_model: str = config.LLM_CHAT_MODEL
    embedding_model: str = config.DEFAULT_TENANT_EMBEDDING_MODEL
    embedding_dim: int = config.EMBEDDING_DIM
    timeout_seconds: float = config.LLM_TIMEOUT_SECONDS
    retry_max: int = config.LLM_RETRY_MAX
    retry_backoff_seconds: float = config.LLM_RETRY_BACKOFF_SECONDS
    retry_jitter_seconds: float = config.LLM_RETRY_JITTER_SECONDS
    region: str = config.AWS_REGION

    @classmethod
    def from_tenant(cls, llm_config: Optional[Mapping[str, Any]], embedding_model: Optional[str]) -> "ProviderSettings":
        llm_config = llm_config or {}
        defaults = cls()
        provider = str(llm_config.get("provider", defaults.provider)).strip().lower()
        chat_model = defaults.chat_model
        embedding_model = llm_config.get("embedding_model") or embedding_model or defaults.embedding_model
        if provider == "bedrock":
            chat_model = config.BEDROCK_CHAT_MODEL
            if embedding_model == config.DEFAULT_TENANT_EMBEDDING_MODEL:
                embedding_model = config.BEDROCK_EMBEDDING_MODEL
        return cls(
            provider=provider,
            api_key=llm_config.get("api_key", defaults.api_key),
            base_url=str(llm_config.get("base_url", defaults.base_url)),
            chat_model=str(llm_config.get("chat_model", chat_model)),
            embedding_model=str(embedding_model),
            embedding_dim=int(llm_config.get("embedding_dim", defaults.embedding_dim)),
            timeout_seconds=float(llm_config.get("timeout_seconds", defaults.timeout_seconds)),
            retry_max=int(llm_config.get("retry_max", defaults.retry_max)),
            region=str(llm_config.get("region", defaults.region)),
        )


# =============================================================================
# OpenAI-compatible HTTP provider
# =============================================================================

class OpenAICompatibleProvider:
    def __init__(
        self,
        settings: ProviderSettings,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[ProviderCircuitBreaker] = None,
    ):
        self.settings = settings
        self.name = f"openai:{settings.chat_model}"
        self._owns_client = client is None
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            headers=headers,
        )
        self.circuit_breaker = circuit_breaker or ProviderCircuitBreaker(
            failure_threshold=config.LLM_FAILURE_THRESHOLD,
            cooldown_seconds=config.LLM_COOLDOWN_SECONDS,
        )

    async def _post(self, path: str, payload: dict, error_cls: type[Exception]) -> dict:
        if self.circuit_breaker.is_open():
            logger.warning("provider_circuit_open", extra={"provider": self.name})
            raise error_cls("provider unavailable: circuit breaker open")

        for attempt in range(self.settings.retry_max + 1):
            try:
                response = await self._client.post(path, json=payload)
            except httpx.RequestError as exc:
                if attempt >= self.settings.retry_max:
                    self.circuit_breaker.record_failure(str(exc))
                    raise error_cls(f"provider request failed: {exc}") from exc
                await async_sleep_backoff(
                    attempt,
                    self.settings.retry_backoff_seconds,
                    self.settings.retry_jitter_seconds,
                )
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= self.settings.retry_max:
                    self.circuit_breaker.record_failure(f"status {response.status_code}")
                    raise error_cls(f"provider returned status {response.status_code}")
                await async_sleep_backoff(
                    attempt,
                    self.settings.retry_backoff_seconds,
                    self.settings.retry_jitter_seconds,
                )
                continue
            if response.status_code >= 400:
                self.circuit_breaker.record_failure(f"status {response.status_code}")
                raise error_cls(f"provider returned status {response.status_code}")

            try:
                data = response.json()
            except ValueError as exc:
                self.circuit_breaker.record_failure("invalid json")
                raise error_cls("provider returned invalid JSON") from exc
            self.circuit_breaker.record_success()
            return data
        raise error_cls("provider retries exhausted")

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[list[dict]] = None,
        *,
        max_tokens: int,
        temperature: float,
        tool_choice: Optional[str] = None,
    ) -> Completion:
        payload: dict[str, Any] = {
            "model": self.settings.chat_model,
            "messages": [message.to_dict() for message in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"

        data = await self._post("/chat/completions", payload, CompletionFailed)
        choices = data.get("choices") or []
        if not choices or not choices[0].get("message"):
            raise CompletionFailed("provider returned no choices")
        usage = data.get("usage") or {}
        return Completion(
            message=ChatMessage.from_dict(choices[0]["message"]),
            usage=TokenUsage(
                prompt_tokens=int(usage.get("prompt_tokens", 0)),
                completion_tokens=int(usage.get("completion_tokens", 0)),
                total_tokens=int(usage.get("total_tokens", 0)),
            ),
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        data = await self._post(
            "/embeddings",
            {"model": self.settings.embedding_model, "input": list(texts)},
            EmbeddingFailed,
        )
        rows = sorted(data.get("data") or [], key=lambda row: row.get("index", 0))
        vectors = [row.get("embedding") or [] for row in rows]
        if len(vectors) != len(texts):
            raise EmbeddingFailed(
                f"provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# Amazon Bedrock provider
# =============================================================================

BEDROCK_RETRYABLE_ERRORS = {
    "ThrottlingException",
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelNotReadyException",
    "ModelTimeoutException",
}


def _converse_tool_input(arguments: str) -> dict:
    try:
        parsed = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def to_converse_messages(messages: Sequence[ChatMessage]) -> tuple[list[dict], list[dict]]:
    """
    Split chat messages into Converse system blocks and turns.

    Tool results travel as toolResult blocks in a user turn, and consecutive
    turns of the same role are merged because Converse requires alternation.
    """
    system: list[dict] = []
    turns: list[dict] = []
    for message in messages:
        if message.role == "system":
            if message.content:
                system.append({"text": message.content})
            continue

        if message.role == "tool":
            role = "user"
            blocks = [
                {
                    "toolResult": {
                        "toolUseId": message.tool_call_id or "",
                        "content": [{"text": message.content or "(empty)"}],
                    }
                }
            ]
        else:
            role = "assistant" if message.role == "assistant" else "user"
            blocks = [{"text": message.content}] if message.content else []
            for call in message.tool_calls:
                blocks.append(
                    {
                        "toolUse": {
                            "toolUseId": call.id,
                            "name": call.function.name,
                            "input": _converse_tool_input(call.function.arguments),
                        }
                    }
                )
        if not blocks:
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})
    return system, turns


def to_converse_tool_config(tools: list[dict], tool_choice: Optional[str]) -> dict:
    specs = []
    for tool in tools:
        function = tool.get("function") or {}
        specs.append(
            {
                "toolSpec": {
                    "name": function.get("name", ""),
                    "description": function.get("description") or function.get("name", ""),
                    "inputSchema": {"json": function.get("parameters") or {"type": "object", "properties": {}}},
                }
            }
        )
    choice = {"any": {}} if tool_choice in {"required", "any"} else {"auto": {}}
    return {"tools": specs, "toolChoice": choice}


class BedrockProvider:
    """Converse chat and Titan-style InvokeModel embeddings over boto3."""

    def __init__(
        self,
        settings: ProviderSettings,
        client: Any = None,
        circuit_breaker: Optional[ProviderCircuitBreaker] = None,
    ):
        self.settings = settings
        self.name = f"bedrock:{settings.chat_model}"
        self._owns_client = client is None
        self._client = client or boto3.client(
            "bedrock-runtime",
            region_name=settings.region,
            config=BotoConfig(
                connect_timeout=settings.timeout_seconds,
                read_timeout=settings.timeout_seconds,
                retries={"max_attempts": 0},
            ),
        )
        self.circuit_breaker = circuit_breaker or ProviderCircuitBreaker(
            failure_threshold=config.LLM_FAILURE_THRESHOLD,
            cooldown_seconds=config.LLM_COOLDOWN_SECONDS,
        )

    def _invoke(self, operation: str, kwargs: dict) -> dict:
        response = getattr(self._client, operation)(**kwargs)
        body = response.get("body")
        if body is not None and hasattr(body, "read"):
            response = {**response, "body": body.read()}
        return response

    async def _call(self, operation: str, error_cls: type[Exception], **kwargs) -> dict:
        if self.circuit_breaker.is_open():
            logger.warning("provider_circuit_open", extra={"provider": self.name})
            raise error_cls("provider unavailable: circuit breaker open")

        for attempt in range(self.settings.retry_max + 1):
            try:
                response = await asyncio.to_thread(self._invoke, operation, kwargs)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code not in BEDROCK_RETRYABLE_ERRORS or attempt >= self.settings.retry_max:
                    self.circuit_breaker.record_failure(code or str(exc))
                    raise error_cls(f"bedrock {operation} failed: {code or exc}") from exc
                error = code
            except BotoCoreError as exc:
                if attempt >= self.settings.retry_max:
                    self.circuit_breaker.record_failure(str(exc))
                    raise error_cls(f"bedrock {operation} failed: {exc}") from exc
                error = type(exc).__name__
            else:
                self.circuit_breaker.record_success()
                return response

            logger.warning(
                "bedrock_call_retry",
                extra={"operation": operation, "attempt": attempt + 1, "error": error},
            )
            await async_sleep_backoff(
                attempt,
                self.settings.retry_backoff_seconds,
                self.settings.retry_jitter_seconds,
            )
        raise error_cls("provider retries exhausted")

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[list[dict]] = None,
        *,
        max_tokens: int,
        temperature: float,
        tool_choice: Optional[str] = None,
    ) -> Completion:
        system, turns = to_converse_messages(messages)
        request: dict[str, Any] = {
            "modelId": self.settings.chat_model,
            "messages": turns,
            "inferenceConfig": {"maxTokens": max_tokens, "temperature": float(temperature)},
        }
        if system:
            request["system"] = system
        if tools and tool_choice != "none":
            request["toolConfig"] = to_converse_tool_config(tools, tool_choice)

        data = await self._call("converse", CompletionFailed, **request)
        message = (data.get("output") or {}).get("message")
        if not message:
            raise CompletionFailed("provider returned no message")

        text_parts = []
        tool_calls = []
        for block in message.get("content") or []:
            if "text" in block:
                text_parts.append(block["text"])
            elif "toolUse" in block:
                tool_use = block["toolUse"]
                tool_calls.append(
                    ToolCall(
                        id=tool_use.get("toolUseId") or f"call_{uuid.uuid4().hex[:8]}",
                        function=FunctionCall(
                            name=tool_use.get("name", ""),
                            arguments=json.dumps(tool_use.get("input") or {}),
                        ),
                    )
                )
        usage = data.get("usage") or {}
        return Completion(
            message=ChatMessage(role="assistant", content="".join(text_parts), tool_calls=tool_calls),
            usage=TokenUsage(
                prompt_tokens=int(usage.get("inputTokens", 0)),
                completion_tokens=int(usage.get("outputTokens", 0)),
                total_tokens=int(usage.get("totalTokens", 0)),
            ),
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        # Titan embedding models take one input per request.
        vectors = []
        for text in texts:
            data = await self._call(
                "invoke_model",
                EmbeddingFailed,
                modelId=self.settings.embedding_model,
                body=json.dumps({"inputText": text}),
                accept="application/json",
                contentType="application/json",
            )
            try:
                payload = json.loads(data.get("body") or b"{}")
            except ValueError as exc:
                raise EmbeddingFailed("provider returned invalid JSON") from exc
            vector = payload.get("embedding") if isinstance(payload, dict) else None
            if not vector:
                raise EmbeddingFailed("provider returned an empty embedding")
            vectors.append([float(value) for value in vector])
        return vectors

    async def close(self) -> None:
        if self._owns_client:
            self._client.close()


# =============================================================================
# Mock provider
# =============================================================================

MOCK_TOOL_KEYWORDS = (
    "search", "find", "look", "get", "retrieve",
    "remember", "recall", "note", "save", "store",
    "task", "todo", "event", "schedule", "reminder",
    "call", "api", "http", "service",
)

MOCK_RESPONSES = (
    "I understand your request. As a mock LLM, I'm simulating a helpful response to your message about: {}",
    "Thank you for your message. I'm processing your request regarding: {}",
    "I'm a mock assistant. Based on your input about {}, here's my simulated response.",
    "Mock LLM response: I've received your message and I'm providing a helpful reply about: {}",
)


def _estimate_tokens(messages: Sequence[ChatMessage]) -> int:
    total_chars = sum(len(message.content) + len(message.role) + 10 for message in messages)
    return (total_chars + 3) // 4


class MockProvider:
    """Deterministic offline provider: hashed embeddings, keyword tool calls."""

    def __init__(self, settings: Optional[ProviderSettings] = None):
        self.settings = settings or ProviderSettings(provider="mock")
        self.name = f"mock:{self.settings.chat_model}"
        self.closed = False

    def _embedding_for(self, text: str) -> list[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        vector = rng.uniform(-1.0, 1.0, self.settings.embedding_dim)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.astype(float).tolist()

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embedding_for(text) for text in texts]

    @staticmethod
    def _should_use_tool(content: str) -> bool:
        lowered = content.lower()
        return any(keyword in lowered for keyword in MOCK_TOOL_KEYWORDS)

    @staticmethod
    def _pick_tool_call(content: str, tools: list[dict]) -> ToolCall:
        names = [tool["function"]["name"] for tool in tools]
        lowered = content.lower()
        if "upsert_item" in names and any(word in lowered for word in ("remember", "save", "store", "note")):
            name, arguments = "upsert_item", {"kind": "note", "text": content}
        elif "search" in names:
            name, arguments = "search", {"query": content, "top_k": 5}
        else:
            name, arguments = names[0], {}
        return ToolCall(
            id=f"call_{uuid.uuid4().hex[:8]}",
            function=FunctionCall(name=name, arguments=json.dumps(arguments)),
        )

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[list[dict]] = None,
        *,
        max_tokens: int,
        temperature: float,
        tool_choice: Optional[str] = None,
    ) -> Completion:
        tool_calls: list[ToolCall] = []
        text = "Hello! I'm a mock LLM provider. How can I help you?"
        if messages:
            last = messages[-1]
            if last.role == "tool":
                text = "I've completed that using my tools."
            elif tools and self._should_use_tool(last.content):
                tool_calls = [self._pick_tool_call(last.content, tools)]
                text = ""
            else:
                display = last.content if len(last.content) <= 50 else last.content[:47] + "..."
                text = MOCK_RESPONSES[len(last.content) % len(MOCK_RESPONSES)].format(display)

        prompt_tokens = _estimate_tokens(messages)
        completion_tokens = (len(text) + 3) // 4
        return Completion(
            message=ChatMessage(role="assistant", content=text, tool_calls=tool_calls),
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    async def close(self) -> None:
        self.closed = True


def build_chat_provider(settings: ProviderSettings) -> ChatProvider:
    if settings.provider == "openai":
        return OpenAICompatibleProvider(settings)
    if settings.provider == "bedrock":
        return BedrockProvider(settings)
    if settings.provider == "mock":
        return MockProvider(settings)
    raise ValidationIssue(
        f"unsupported LLM provider type: {settings.provider}",
        field="llm.provider",
        error_type="invalid_enum",
    )
