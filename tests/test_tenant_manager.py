import asyncio
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from core.errors import NotFound, StorageUnavailable, ValidationIssue
from core.services.agent_runtime import AgentRuntime
from core.services.llm_providers import MockProvider
from core.services.memory_stores import LexicalMemoryStore
from core.services.tenant_manager import RWLock, TenantResourceManager
from core.services.tenant_sources import StaticTenantSource, TenantConfig, generate_tenant_id


class FakeHandle:
    def __init__(self, tenant_id, fail_on_close=False):
        self.tenant_id = tenant_id
        self.closed = 0
        self.fail_on_close = fail_on_close

    def close(self):
        self.closed += 1
        if self.fail_on_close:
            raise RuntimeError("close failed")


class CountingFactory:
    def __init__(self, delay=0.0, fail_on_close=False):
        self.created = []
        self.delay = delay
        self.fail_on_close = fail_on_close
        self._lock = threading.Lock()

    def __call__(self, tenant, *args):
        if self.delay:
            threading.Event().wait(self.delay)
        handle = FakeHandle(tenant.tenant_id, self.fail_on_close)
        with self._lock:
            self.created.append(handle)
        return handle


def _entries(*keys):
    return [{"routing_key": key, "enabled_agents": ["db_agent", "orchestrator"]} for key in keys]


def _manager(source, **kwargs):
    kwargs.setdefault("storage_factory", CountingFactory())
    kwargs.setdefault("memory_store_factory", CountingFactory())
    kwargs.setdefault("provider_factory", lambda tenant: MockProvider())
    return TenantResourceManager(source, isolation_mode="shared", **kwargs)


def test_resolve_by_routing_key_and_id():
    manager = _manager(StaticTenantSource(_entries("+15550001", "+15550002")))
    tenant = manager.resolve("+15550001")
    assert tenant.tenant_id == generate_tenant_id("+15550001")
    assert manager.resolve_by_id(tenant.tenant_id) is tenant
    assert [t.routing_key for t in manager.list_all()] == sorted(
        ["+15550001", "+15550002"], key=generate_tenant_id
    )
    with pytest.raises(NotFound):
        manager.resolve("+19999999")
    with pytest.raises(NotFound):
        manager.resolve_by_id("tenant_missing")


def test_generate_tenant_id_is_stable():
    assert generate_tenant_id("acme") == generate_tenant_id("acme")
    assert generate_tenant_id("acme").startswith("tenant_")
    assert len(generate_tenant_id("acme")) == len("tenant_") + 16


def test_capability_enablement():
    manager = _manager(StaticTenantSource(_entries("acme")))
    tenant_id = manager.resolve("acme").tenant_id
    assert manager.is_capability_enabled(tenant_id, "db_agent")
    assert not manager.is_capability_enabled(tenant_id, "http_agent")
    assert not manager.is_capability_enabled("tenant_missing", "db_agent")


def test_duplicate_routing_keys_rejected():
    with pytest.raises(ValidationIssue):
        _manager(StaticTenantSource(_entries("acme", "acme")))


def test_dedicated_mode_requires_dsn():
    with pytest.raises(ValidationIssue):
        TenantResourceManager(StaticTenantSource(_entries("acme")), isolation_mode="dedicated")


def test_unknown_isolation_mode_rejected():
    with pytest.raises(ValidationIssue):
        TenantResourceManager(StaticTenantSource([]), isolation_mode="sharded")


def test_concurrent_first_access_builds_one_handle():
    storage_factory = CountingFactory(delay=0.01)
    store_factory = CountingFactory(delay=0.01)
    manager = _manager(
        StaticTenantSource(_entries("acme")),
        storage_factory=storage_factory,
        memory_store_factory=store_factory,
    )
    tenant_id = manager.resolve("acme").tenant_id

    with ThreadPoolExecutor(max_workers=8) as executor:
        stores = list(executor.map(lambda _: manager.get_memory_store(tenant_id), range(16)))
        storages = list(executor.map(lambda _: manager.get_storage(tenant_id), range(16)))

    assert len(store_factory.created) == 1
    assert len(storage_factory.created) == 1
    assert all(store is stores[0] for store in stores)
    assert all(storage is storages[0] for storage in storages)
    assert manager.stats()["active_memory_stores"] == 1


def test_get_for_unknown_tenant_raises_not_found():
    manager = _manager(StaticTenantSource(_entries("acme")))
    with pytest.raises(NotFound):
        manager.get_llm_provider("tenant_missing")


def test_reload_evicts_removed_tenants_and_closes_handles():
    source = StaticTenantSource(_entries("acme", "globex"))
    storage_factory = CountingFactory()
    manager = _manager(source, storage_factory=storage_factory)
    acme_id = manager.resolve("acme").tenant_id
    globex_id = manager.resolve("globex").tenant_id
    acme_storage = manager.get_storage(acme_id)
    globex_storage = manager.get_storage(globex_id)
    provider = manager.get_llm_provider(globex_id)

    source.replace(_entries("acme", "initech"))
    asyncio.run(manager.reload())

    assert globex_storage.closed == 1
    assert provider.closed
    assert acme_storage.closed == 0
    assert manager.get_storage(acme_id) is acme_storage
    with pytest.raises(NotFound):
        manager.resolve("globex")
    assert manager.resolve("initech").routing_key == "initech"
    assert manager.stats()["total_tenants"] == 2


def test_reload_failure_keeps_previous_table():
    source = StaticTenantSource(_entries("acme"))
    manager = _manager(source)
    source.replace([{"routing_key": ""}])
    with pytest.raises(ValidationIssue):
        asyncio.run(manager.reload())
    assert manager.resolve("acme").routing_key == "acme"


def test_close_is_idempotent_and_blocks_new_handles():
    storage_factory = CountingFactory()
    manager = _manager(StaticTenantSource(_entries("acme")), storage_factory=storage_factory)
    tenant_id = manager.resolve("acme").tenant_id
    storage = manager.get_storage(tenant_id)

    asyncio.run(manager.close())
    asyncio.run(manager.close())

    assert storage.closed == 1
    with pytest.raises(StorageUnavailable):
        manager.get_storage(tenant_id)


def test_close_reports_failures_after_closing_everything():
    storage_factory = CountingFactory(fail_on_close=True)
    store_factory = CountingFactory()
    manager = _manager(
        StaticTenantSource(_entries("acme")),
        storage_factory=storage_factory,
        memory_store_factory=store_factory,
    )
    tenant_id = manager.resolve("acme").tenant_id
    manager.get_memory_store(tenant_id)

    with pytest.raises(StorageUnavailable):
        asyncio.run(manager.close())
    assert store_factory.created[0].closed == 1
    assert storage_factory.created[0].closed == 1


def test_shared_mode_uses_shared_engine(sqlite_engine):
    manager = TenantResourceManager(
        StaticTenantSource(_entries("acme")),
        isolation_mode="shared",
        shared_engine=sqlite_engine,
    )
    tenant_id = manager.resolve("acme").tenant_id
    storage = manager.get_storage(tenant_id)
    assert storage.engine is sqlite_engine
    assert not storage.owns_engine
    store = manager.get_memory_store(tenant_id)
    assert isinstance(store, LexicalMemoryStore)
    asyncio.run(manager.close())
    assert storage.closed


def test_static_source_from_file(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_text(json.dumps({"tenants": _entries("acme")}), encoding="utf-8")
    entries = StaticTenantSource.from_file(str(path)).load()
    assert TenantConfig.from_mapping(entries[0], require_dsn=False).routing_key == "acme"


def test_tenant_config_defaults_and_validation():
    tenant = TenantConfig.from_mapping({"routing_key": " acme ", "vector_store": "SQL_FALLBACK"}, require_dsn=False)
    assert tenant.routing_key == "acme"
    assert tenant.vector_store == "sql_fallback"
    assert tenant.to_dict()["tenant_id"] == generate_tenant_id("acme")
    with pytest.raises(ValidationIssue):
        TenantConfig.from_mapping({"routing_key": "acme", "vector_store": "faiss"}, require_dsn=False)


def test_rwlock_writer_excludes_readers():
    lock = RWLock()
    events = []
    with lock.read():
        with lock.read():
            events.append("nested-read")

    def writer():
        with lock.write():
            events.append("write")

    with lock.read():
        thread = threading.Thread(target=writer)
        thread.start()
        thread.join(timeout=0.05)
        assert "write" not in events
    thread.join(timeout=1)
    assert events == ["nested-read", "write"]


class GatedFactory:
    """Storage factory whose build for one tenant waits until released."""

    def __init__(self, gated_tenant_id):
        self.gated_tenant_id = gated_tenant_id
        self.building = threading.Event()
        self.release = threading.Event()
        self.created = []

    def __call__(self, tenant, *args):
        if tenant.tenant_id == self.gated_tenant_id:
            self.building.set()
            self.release.wait(timeout=5)
        handle = FakeHandle(tenant.tenant_id)
        self.created.append(handle)
        return handle


def test_slow_handle_build_does_not_block_other_tenants():
    acme_id, globex_id = generate_tenant_id("acme"), generate_tenant_id("globex")
    factory = GatedFactory(acme_id)
    manager = _manager(StaticTenantSource(_entries("acme", "globex")), storage_factory=factory)

    with ThreadPoolExecutor(max_workers=2) as executor:
        slow = executor.submit(manager.get_storage, acme_id)
        try:
            assert factory.building.wait(timeout=1)
            other = executor.submit(
                lambda: (manager.resolve("globex"), manager.get_storage(globex_id), manager.stats())
            )
            tenant, storage, stats = other.result(timeout=1)
            assert tenant.tenant_id == globex_id
            assert storage.tenant_id == globex_id
            assert stats["active_storage"] == 1
            assert not slow.done()
        finally:
            factory.release.set()
        assert slow.result(timeout=1).tenant_id == acme_id
    assert manager.stats()["active_storage"] == 2


def test_event_loop_keeps_running_while_a_handle_is_built():
    acme_id = generate_tenant_id("acme")
    factory = GatedFactory(acme_id)
    manager = _manager(StaticTenantSource(_entries("acme", "globex")), storage_factory=factory)
    gaps = []

    async def heartbeat(stop):
        last = time.monotonic()
        while not stop.is_set():
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    async def scenario():
        stop = asyncio.Event()
        beats = asyncio.ensure_future(heartbeat(stop))
        build = asyncio.ensure_future(asyncio.to_thread(manager.get_storage, acme_id))
        assert await asyncio.to_thread(factory.building.wait, 1)

        assert manager.resolve("globex").routing_key == "globex"
        await asyncio.wait_for(manager.reload(), timeout=1)
        await asyncio.sleep(0.1)
        assert not build.done()

        factory.release.set()
        storage = await build
        stop.set()
        await beats
        return storage

    storage = asyncio.run(scenario())
    assert storage.tenant_id == acme_id
    assert max(gaps) < 0.3


def test_handle_built_for_removed_tenant_is_discarded_and_closed():
    acme_id = generate_tenant_id("acme")
    factory = GatedFactory(acme_id)
    source = StaticTenantSource(_entries("acme", "globex"))
    manager = _manager(source, storage_factory=factory)

    with ThreadPoolExecutor(max_workers=1) as executor:
        pending = executor.submit(manager.get_storage, acme_id)
        assert factory.building.wait(timeout=1)
        source.replace(_entries("globex"))
        asyncio.run(manager.reload())
        factory.release.set()
        with pytest.raises(NotFound):
            pending.result(timeout=1)

    orphan = factory.created[0]
    assert orphan.closed == 0
    assert manager.stats()["active_storage"] == 0
    asyncio.run(manager.close())
    assert orphan.closed == 1


def test_default_pgvector_tenant_turn_on_sqlite_uses_lexical_store(sqlite_engine):
    manager = TenantResourceManager(
        StaticTenantSource(
            [{"routing_key": "+15550100", "config": {"llm": {"provider": "mock", "embedding_dim": 16}}}]
        ),
        isolation_mode="shared",
        shared_engine=sqlite_engine,
    )
    runtime = AgentRuntime(manager)
    tenant = manager.resolve("+15550100")
    assert tenant.vector_store == "pgvector"

    result = asyncio.run(runtime.handle_turn("+15550100", "user-1", "hi there"))

    assert result.reply
    assert result.metadata["type"] == "conversational"
    assert isinstance(manager.get_memory_store(tenant.tenant_id), LexicalMemoryStore)
    asyncio.run(manager.close())
