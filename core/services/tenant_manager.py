"""
Per-tenant resource manager.

Maps routing keys to tenant configurations and lazily builds, caches and
releases each tenant's storage handle, memory store and LLM provider. The
tenant table and handle caches are the only state shared between concurrent
turns; they are guarded by a reader/writer lock that is only held for table
and cache updates, never while a handle is being built. Building is
serialized per tenant by a creation lock and re-checks the cache, so
concurrent first access builds exactly one handle.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.engine import Engine

import core.config as config
from core.db import (
    TenantStorage,
    create_engine_for_url,
    open_dedicated_storage,
    open_shared_storage,
)
from core.errors import NotFound, StorageUnavailable, ValidationIssue
from core.services.llm_providers import ChatProvider, ProviderSettings, build_chat_provider
from core.services.memory_stores import MemoryStore, build_memory_store
from core.services.tenant_sources import TenantConfig, TenantEntry, TenantSource

logger = config.logger

StorageFactory = Callable[[TenantConfig], TenantStorage]
MemoryStoreFactory = Callable[[TenantConfig, TenantStorage], MemoryStore]
ProviderFactory = Callable[[TenantConfig], ChatProvider]


class RWLock:
    """Reader/writer lock; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _default_memory_store(tenant: TenantConfig, storage: TenantStorage) -> MemoryStore:
    return build_memory_store(tenant.vector_store, storage)


def _default_provider(tenant: TenantConfig) -> ChatProvider:
    settings = ProviderSettings.from_tenant(tenant.config.get("llm"), tenant.embedding_model)
    return build_chat_provider(settings)


class TenantResourceManager:
    def __init__(
        self,
        source: TenantSource,
        *,
        isolation_mode: str = config.TENANT_ISOLATION_MODE,
        shared_engine: Optional[Engine] = None,
        storage_factory: Optional[StorageFactory] = None,
        memory_store_factory: Optional[MemoryStoreFactory] = None,
        provider_factory: Optional[ProviderFactory] = None,
    ):
        if isolation_mode not in {config.TENANT_ISOLATION_SHARED, config.TENANT_ISOLATION_DEDICATED}:
            raise ValidationIssue(
                f"unsupported tenant isolation mode: {isolation_mode}",
                field="isolation_mode",
                error_type="invalid_enum",
            )
        self._source = source
        self.isolation_mode = isolation_mode
        self._shared_engine = shared_engine
        self._owns_shared_engine = False
        self._storage_factory = storage_factory or self._open_storage
        self._memory_store_factory = memory_store_factory or _default_memory_store
        self._provider_factory = provider_factory or _default_provider

        self._lock = RWLock()
        self._creation_guard = threading.Lock()
        self._creation_locks: dict[str, threading.RLock] = {}
        self._engine_lock = threading.Lock()
        self._orphans: list[Any] = []
        self._closed = False
        self._storage: dict[str, TenantStorage] = {}
        self._memory_stores: dict[str, MemoryStore] = {}
        self._providers: dict[str, ChatProvider] = {}
        self._by_key, self._by_id = self._build_tables(source.load())
        logger.info(
            "tenant_manager_initialized",
            extra={"tenants_loaded": len(self._by_id), "isolation_mode": isolation_mode},
        )

    # ------------------------------------------------------------------
    # Tenant table
    # ------------------------------------------------------------------

    def _build_tables(self, entries: list[TenantEntry]) -> tuple[dict[str, TenantConfig], dict[str, TenantConfig]]:
        require_dsn = self.isolation_mode == config.TENANT_ISOLATION_DEDICATED
        by_key: dict[str, TenantConfig] = {}
        by_id: dict[str, TenantConfig] = {}
        for entry in entries:
            tenant = entry if isinstance(entry, TenantConfig) else TenantConfig.from_mapping(entry, require_dsn=require_dsn)
            if tenant.routing_key in by_key:
                raise ValidationIssue(
                    f"duplicate routing key: {tenant.routing_key}",
                    field="routing_key",
                    error_type="duplicate",
                )
            if tenant.tenant_id in by_id:
                raise ValidationIssue(
                    f"duplicate tenant id: {tenant.tenant_id}",
                    field="tenant_id",
                    error_type="duplicate",
                )
            by_key[tenant.routing_key] = tenant
            by_id[tenant.tenant_id] = tenant
        return by_key, by_id

    def resolve(self, routing_key: str) -> TenantConfig:
        with self._lock.read():
            tenant = self._by_key.get(routing_key)
        if tenant is None:
            raise NotFound(
                f"tenant not found for routing key: {routing_key}",
                resource="tenant",
                resource_id=routing_key,
            )
        return tenant

    def resolve_by_id(self, tenant_id: str) -> TenantConfig:
        with self._lock.read():
            tenant = self._by_id.get(tenant_id)
        if tenant is None:
            raise NotFound(f"tenant not found: {tenant_id}", resource="tenant", resource_id=tenant_id)
        return tenant

    def list_all(self) -> list[TenantConfig]:
        with self._lock.read():
            return [self._by_id[tenant_id] for tenant_id in sorted(self._by_id)]

    def is_capability_enabled(self, tenant_id: str, name: str) -> bool:
        with self._lock.read():
            tenant = self._by_id.get(tenant_id)
        return tenant is not None and name in tenant.enabled_agents

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def _open_storage(self, tenant: TenantConfig) -> TenantStorage:
        if self.isolation_mode == config.TENANT_ISOLATION_DEDICATED:
            return open_dedicated_storage(tenant.tenant_id, tenant.db_dsn)
        with self._engine_lock:
            if self._shared_engine is None:
                config.validate_and_prepare_config()
                self._shared_engine = create_engine_for_url(config.DATABASE_URL)
                self._owns_shared_engine = True
            engine = self._shared_engine
        return open_shared_storage(tenant.tenant_id, engine)

    def _tenant_locked(self, tenant_id: str) -> TenantConfig:
        if self._closed:
            raise StorageUnavailable("tenant manager is closed")
        tenant = self._by_id.get(tenant_id)
        if tenant is None:
            raise NotFound(f"tenant not found: {tenant_id}", resource="tenant", resource_id=tenant_id)
        return tenant

    def _creation_lock(self, tenant_id: str) -> threading.RLock:
        with self._creation_guard:
            lock = self._creation_locks.get(tenant_id)
            if lock is None:
                lock = threading.RLock()
                self._creation_locks[tenant_id] = lock
            return lock

    def _lookup(self, cache: dict, tenant_id: str) -> tuple[TenantConfig, Any]:
        with self._lock.read():
            return self._tenant_locked(tenant_id), cache.get(tenant_id)

    def _get_or_create(self, cache: dict, tenant_id: str, build: Callable[[TenantConfig], Any]) -> Any:
        """
        Return the cached handle, building it at most once per tenant.

        The table lock is only held for lookups and the final insert. The
        build itself (engine creation, connection checks) runs under the
        tenant's creation lock, so other tenants are never held up by it.
        """
        _, handle = self._lookup(cache, tenant_id)
        if handle is not None:
            return handle

        with self._creation_lock(tenant_id):
            tenant, handle = self._lookup(cache, tenant_id)
            if handle is not None:
                return handle
            handle = build(tenant)
            with self._lock.write():
                try:
                    self._tenant_locked(tenant_id)
                except (NotFound, StorageUnavailable):
                    # Released while building; the next reload() or close() closes it.
                    self._orphans.append(handle)
                    logger.warning("tenant_handle_discarded", extra={"tenant_id": tenant_id})
                    raise
                cache[tenant_id] = handle
            return handle

    def get_storage(self, tenant_id: str) -> TenantStorage:
        def build(tenant: TenantConfig) -> TenantStorage:
            storage = self._storage_factory(tenant)
            logger.info("tenant_storage_created", extra={"tenant_id": tenant.tenant_id})
            return storage

        return self._get_or_create(self._storage, tenant_id, build)

    def get_memory_store(self, tenant_id: str) -> MemoryStore:
        def build(tenant: TenantConfig) -> MemoryStore:
            store = self._memory_store_factory(tenant, self.get_storage(tenant.tenant_id))
            logger.info(
                "tenant_memory_store_created",
                extra={"tenant_id": tenant.tenant_id, "vector_store": tenant.vector_store},
            )
            return store

        return self._get_or_create(self._memory_stores, tenant_id, build)

    def get_llm_provider(self, tenant_id: str) -> ChatProvider:
        def build(tenant: TenantConfig) -> ChatProvider:
            provider = self._provider_factory(tenant)
            logger.info("tenant_llm_provider_created", extra={"tenant_id": tenant.tenant_id})
            return provider

        return self._get_or_create(self._providers, tenant_id, build)

    def _detach_locked(self, tenant_id: str) -> list[Any]:
        handles = []
        for cache in (self._memory_stores, self._providers, self._storage):
            handle = cache.pop(tenant_id, None)
            if handle is not None:
                handles.append(handle)
        return handles

    def _take_orphans_locked(self) -> list[Any]:
        orphans, self._orphans = self._orphans, []
        return orphans

    @staticmethod
    async def _close_handles(handles: list[Any]) -> list[str]:
        failures = []
        for handle in handles:
            try:
                outcome = await asyncio.to_thread(handle.close)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.error("tenant_handle_close_failed", extra={"handle": type(handle).__name__, "error": str(exc)})
                failures.append(f"{type(handle).__name__}: {exc}")
        return failures

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _swap_tables(self, by_key: dict, by_id: dict) -> tuple[list[str], list[Any]]:
        with self._lock.write():
            if self._closed:
                raise StorageUnavailable("tenant manager is closed")
            removed = [tenant_id for tenant_id in self._by_id if tenant_id not in by_id]
            self._by_key, self._by_id = by_key, by_id
            detached = []
            for tenant_id in removed:
                detached.extend(self._detach_locked(tenant_id))
            detached.extend(self._take_orphans_locked())
        with self._creation_guard:
            for tenant_id in removed:
                self._creation_locks.pop(tenant_id, None)
        return removed, detached

    async def reload(self) -> None:
        """Replace the tenant table; handles of removed tenants are closed."""
        entries = await asyncio.to_thread(self._source.load)
        by_key, by_id = self._build_tables(entries)
        removed, detached = await asyncio.to_thread(self._swap_tables, by_key, by_id)

        for tenant_id in removed:
            logger.info("tenant_removed", extra={"tenant_id": tenant_id})
        failures = await self._close_handles(detached)
        logger.info("tenant_configs_reloaded", extra={"tenants_loaded": len(by_id), "removed": len(removed)})
        if failures:
            raise StorageUnavailable("failed to close removed tenant handles: " + "; ".join(failures))

    def _detach_all(self) -> tuple[list[Any], Optional[Engine]]:
        with self._lock.write():
            if self._closed:
                return self._take_orphans_locked(), None
            self._closed = True
            detached = []
            for tenant_id in set(self._storage) | set(self._memory_stores) | set(self._providers):
                detached.extend(self._detach_locked(tenant_id))
            detached.extend(self._take_orphans_locked())
        with self._engine_lock:
            shared_engine = self._shared_engine if self._owns_shared_engine else None
            self._shared_engine = None
        return detached, shared_engine

    async def close(self) -> None:
        """Release every cached handle; safe to call more than once."""
        detached, shared_engine = await asyncio.to_thread(self._detach_all)
        failures = await self._close_handles(detached)
        if shared_engine is not None:
            await asyncio.to_thread(shared_engine.dispose)
        if detached or shared_engine is not None:
            logger.info("tenant_manager_closed", extra={"handles_closed": len(detached) - len(failures)})
        if failures:
            raise StorageUnavailable("failed to close tenant handles: " + "; ".join(failures))

    def stats(self) -> dict:
        with self._lock.read():
            return {
                "total_tenants": len(self._by_id),
                "active_storage": len(self._storage),
                "active_memory_stores": len(self._memory_stores),
                "active_llm_providers": len(self._providers),
                "tenant_ids": sorted(self._by_id),
            }
