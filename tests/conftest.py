import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "sql_fallback")
os.environ.setdefault("LLM_PROVIDER", "mock")
os.environ.setdefault("TENANT_ISOLATION_MODE", "shared")

import pytest
from sqlalchemy import create_engine

from core.db import TenantStorage
from core.models import Base
from core.services.llm_providers import MockProvider, ProviderSettings
from core.services.memory_pipeline import MemoryPipeline, PipelineConfig
from core.services.memory_stores import LexicalMemoryStore

TENANT_ID = "tenant_test"
USER_ID = "user-1"


@pytest.fixture
def sqlite_engine(tmp_path):
    db_path = tmp_path / "assistgate.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def storage(sqlite_engine):
    handle = TenantStorage(TENANT_ID, sqlite_engine, enforce_isolation=True, owns_engine=False)
    yield handle
    handle.close()


@pytest.fixture
def lexical_store(storage):
    return LexicalMemoryStore(storage.scope)


@pytest.fixture
def mock_provider():
    return MockProvider(ProviderSettings(provider="mock", embedding_dim=16))


@pytest.fixture
def pipeline(lexical_store, mock_provider):
    return MemoryPipeline(lexical_store, mock_provider, PipelineConfig(min_score=0.0))
