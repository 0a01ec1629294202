"""
AssistGate Database Models
PostgreSQL + pgvector schema
"""

import uuid
from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, CheckConstraint, Index, JSON
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base
from pgvector.sqlalchemy import Vector as PgVector

import core.config as config
from core.services.memory_shared import utc_now

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

MEMORY_KINDS = ("note", "event", "task", "msg")

if DB_BACKEND_EFFECTIVE == "postgres" and VECTOR_BACKEND_EFFECTIVE == "pgvector":
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=False) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str:
    return str(uuid.uuid4())


Base = declarative_base()


# =============================================================================
# Memory chunks
# =============================================================================

class MemoryChunk(Base):
    """One stored memory record (or one chunk of a longer text)."""
    __tablename__ = "memory_chunks"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    tenant_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    kind = Column(String(50), nullable=False)
    text = Column(Text, nullable=False)
    embedding = Column(EMBEDDING_COLUMN_TYPE, nullable=True)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('note', 'event', 'task', 'msg')",
            name="ck_memory_chunks_kind",
        ),
        Index("ix_memory_chunks_tenant_user", "tenant_id", "user_id"),
        Index("ix_memory_chunks_kind", "kind"),
        Index("ix_memory_chunks_created", "created_at"),
    )


# =============================================================================
# Tenant configuration
# =============================================================================

class TenantConfigRow(Base):
    """Source-of-truth tenant configuration for database-first deployments."""
    __tablename__ = "tenants_config"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    tenant_id = Column(String(255), nullable=False, unique=True)
    routing_key = Column(String(100), nullable=False, unique=True)
    db_dsn = Column(Text, nullable=True)
    embedding_model = Column(String(255), nullable=False, default=config.DEFAULT_TENANT_EMBEDDING_MODEL)
    vector_store = Column(String(50), nullable=False, default=config.DEFAULT_TENANT_VECTOR_STORE)
    enabled_agents = Column(JSON_TYPE, default=lambda: list(config.DEFAULT_ENABLED_AGENTS))
    config = Column(JSON_TYPE, default=dict)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "vector_store IN ('pgvector', 'sql_fallback')",
            name="ck_tenants_config_vector_store",
        ),
        Index("ix_tenants_config_enabled", "enabled"),
    )
