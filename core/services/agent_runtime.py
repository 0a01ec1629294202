"""
Per-tenant wiring: registry, memory pipeline and orchestrator for one turn.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

import core.config as config
from core.errors import NotFound
from core.services.http_tools import AGENT_NAME as HTTP_AGENT
from core.services.http_tools import HttpTools, build_http_capabilities
from core.services.intent import IntentClassifier
from core.services.memory_pipeline import MemoryPipeline, PipelineConfig
from core.services.memory_tools import AGENT_NAME as DB_AGENT
from core.services.memory_tools import build_memory_capabilities
from core.services.orchestrator import Orchestrator, OrchestratorConfig, TurnResult
from core.services.tenant_manager import TenantResourceManager
from core.services.tenant_sources import TenantConfig
from core.services.tool_registry import CapabilityRegistry

logger = config.logger

ORCHESTRATOR_AGENT = "orchestrator"


class AgentRuntime:
    """Builds tenant-scoped orchestrators from the resource manager's handles."""

    def __init__(
        self,
        manager: TenantResourceManager,
        *,
        pipeline_config: Optional[PipelineConfig] = None,
        orchestrator_config: Optional[OrchestratorConfig] = None,
        classifier: Optional[IntentClassifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.manager = manager
        self.pipeline_config = pipeline_config
        self.orchestrator_config = orchestrator_config
        self.classifier = classifier
        self.http_client = http_client

    async def build_pipeline(self, tenant: TenantConfig) -> MemoryPipeline:
        store = await asyncio.to_thread(self.manager.get_memory_store, tenant.tenant_id)
        provider = await asyncio.to_thread(self.manager.get_llm_provider, tenant.tenant_id)
        return MemoryPipeline(store, provider, self.pipeline_config)

    def build_registry(
        self,
        tenant: TenantConfig,
        pipeline: MemoryPipeline,
        http_tools: HttpTools,
    ) -> CapabilityRegistry:
        registry = CapabilityRegistry()
        if DB_AGENT in tenant.enabled_agents:
            for capability in build_memory_capabilities(pipeline):
                registry.register(capability)
        if HTTP_AGENT in tenant.enabled_agents:
            for capability in build_http_capabilities(http_tools):
                registry.register(capability)
        return registry

    async def handle_turn(
        self,
        routing_key: str,
        user_id: str,
        text: str,
        *,
        timeout: Optional[float] = None,
    ) -> TurnResult:
        """Resolve the tenant by routing key and run one orchestrated turn."""
        # The manager's locks are thread locks; keep them off the event loop.
        tenant = await asyncio.to_thread(self.manager.resolve, routing_key)
        if ORCHESTRATOR_AGENT not in tenant.enabled_agents:
            raise NotFound(
                f"orchestrator is not enabled for tenant {tenant.tenant_id}",
                resource="agent",
                resource_id=ORCHESTRATOR_AGENT,
            )

        pipeline = await self.build_pipeline(tenant)
        http_tools = HttpTools(tenant.config.get("external_services"), client=self.http_client)
        try:
            orchestrator = Orchestrator(
                self.build_registry(tenant, pipeline, http_tools),
                pipeline.embedder,
                pipeline,
                orchestrator_config=self.orchestrator_config,
                classifier=self.classifier,
                tenant_name=str(tenant.metadata.get("name") or tenant.tenant_id),
            )
            return await orchestrator.process_turn(tenant.tenant_id, user_id, text, timeout=timeout)
        finally:
            await http_tools.close()
