from types import SimpleNamespace

import pytest

import core.db as db_module
from core.db import TenantSessionScope, TenantStorage, open_dedicated_storage, open_shared_storage
from core.errors import StorageUnavailable


class FakeSession:
    def __init__(self, dialect="postgresql"):
        self.statements = []
        self.closed = False
        self._bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect))

    def get_bind(self):
        return self._bind

    def execute(self, statement, params=None):
        self.statements.append((str(statement), params))

    def close(self):
        self.closed = True


def _scope(session, enforce_isolation=True):
    return TenantSessionScope(lambda: session, "tenant_a", enforce_isolation=enforce_isolation)


def test_tenant_session_sets_tenant_context_on_postgres():
    session = FakeSession()
    with _scope(session).session() as db:
        assert db is session
        assert session.statements == [("SELECT set_tenant_context(:tenant_id)", {"tenant_id": "tenant_a"})]
    assert session.closed


def test_admin_session_clears_tenant_context_on_postgres():
    session = FakeSession()
    with _scope(session).admin_session():
        pass
    assert session.statements == [("SELECT clear_tenant_context()", None)]
    assert session.closed


def test_no_context_statements_without_enforcement():
    session = FakeSession()
    scope = _scope(session, enforce_isolation=False)
    with scope.session():
        pass
    with scope.admin_session():
        pass
    assert session.statements == []


def test_no_context_statements_on_sqlite():
    session = FakeSession(dialect="sqlite")
    with _scope(session).session():
        pass
    assert session.statements == []


def test_session_closed_when_body_raises():
    session = FakeSession()
    with pytest.raises(RuntimeError):
        with _scope(session).session():
            raise RuntimeError("boom")
    assert session.closed


def test_shared_storage_enforces_isolation_without_owning_engine(sqlite_engine):
    storage = open_shared_storage("tenant_a", sqlite_engine)
    assert storage.scope.enforce_isolation
    assert not storage.owns_engine
    storage.ping()
    storage.close()
    storage.close()
    assert storage.closed


def test_dedicated_storage_disposes_engine_when_ping_fails(tmp_path, monkeypatch):
    closed = []
    original_close = TenantStorage.close

    def recording_close(self):
        closed.append(self.tenant_id)
        original_close(self)

    monkeypatch.setattr(TenantStorage, "close", recording_close)
    dsn = f"sqlite:///{tmp_path / 'missing-dir' / 'tenant.sqlite'}"

    with pytest.raises(StorageUnavailable):
        open_dedicated_storage("tenant_a", dsn)
    assert closed == ["tenant_a"]


def test_dedicated_storage_owns_its_engine(tmp_path, monkeypatch):
    engines = []
    original = db_module.create_engine_for_url

    def tracking_create(url):
        engine = original(url)
        engines.append(engine)
        return engine

    monkeypatch.setattr(db_module, "create_engine_for_url", tracking_create)
    storage = open_dedicated_storage("tenant_a", f"sqlite:///{tmp_path / 'tenant.sqlite'}")
    assert storage.owns_engine
    assert storage.engine is engines[0]
    storage.close()
    assert storage.closed
