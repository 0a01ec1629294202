"""
Tenant configuration records and the sources they are loaded from.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol, Union

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import core.config as config
from core.db import TenantSessionScope, storage_errors
from core.errors import ValidationIssue
from core.models import TenantConfigRow

logger = config.logger

ADMIN_SCOPE = "__admin__"


def generate_tenant_id(routing_key: str) -> str:
    digest = hashlib.sha256(routing_key.encode("utf-8")).digest()
    return "tenant_" + digest[:8].hex()


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str
    routing_key: str
    db_dsn: Optional[str]
    vector_store: str = config.DEFAULT_TENANT_VECTOR_STORE
    embedding_model: str = config.DEFAULT_TENANT_EMBEDDING_MODEL
    enabled_agents: tuple[str, ...] = tuple(config.DEFAULT_ENABLED_AGENTS)
    config: dict = field(default_factory=dict, compare=False)
    metadata: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, require_dsn: bool = True) -> "TenantConfig":
        """Apply defaults and validate one tenant entry."""
        routing_key = str(raw.get("routing_key") or "").strip()
        if not routing_key:
            raise ValidationIssue("routing_key is required", field="routing_key", error_type="required")

        db_dsn = raw.get("db_dsn") or None
        if require_dsn and not db_dsn:
            raise ValidationIssue(
                f"database DSN is required for tenant {routing_key}",
                field="db_dsn",
                error_type="required",
            )

        vector_store = str(raw.get("vector_store") or config.DEFAULT_TENANT_VECTOR_STORE).strip().lower()
        if vector_store not in config.SUPPORTED_VECTOR_STORES:
            raise ValidationIssue(
                f"unsupported vector store type: {vector_store}",
                field="vector_store",
                error_type="invalid_enum",
            )

        enabled_agents = raw.get("enabled_agents") or config.DEFAULT_ENABLED_AGENTS
        return cls(
            tenant_id=str(raw.get("tenant_id") or generate_tenant_id(routing_key)),
            routing_key=routing_key,
            db_dsn=db_dsn,
            vector_store=vector_store,
            embedding_model=str(raw.get("embedding_model") or config.DEFAULT_TENANT_EMBEDDING_MODEL),
            enabled_agents=tuple(str(agent) for agent in enabled_agents),
            config=dict(raw.get("config") or {}),
            metadata=dict(raw.get("metadata") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "routing_key": self.routing_key,
            "vector_store": self.vector_store,
            "embedding_model": self.embedding_model,
            "enabled_agents": list(self.enabled_agents),
            "metadata": self.metadata,
        }


TenantEntry = Union[TenantConfig, Mapping[str, Any]]


class TenantSource(Protocol):
    def load(self) -> list[TenantEntry]: ...


class StaticTenantSource:
    """Tenant entries supplied in memory or from a JSON file."""

    def __init__(self, entries: Iterable[TenantEntry]):
        self._entries = list(entries)

    @classmethod
    def from_file(cls, path: str) -> "StaticTenantSource":
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if isinstance(payload, Mapping):
            payload = payload.get("tenants", [])
        if not isinstance(payload, list):
            raise ValidationIssue("tenants file must contain a list of tenants", field="tenants")
        return cls(payload)

    def replace(self, entries: Iterable[TenantEntry]) -> None:
        self._entries = list(entries)

    def load(self) -> list[TenantEntry]:
        return list(self._entries)


class DatabaseTenantSource:
    """Reads enabled rows of tenants_config from the central database."""

    def __init__(self, engine: Engine, enforce_isolation: Optional[bool] = None):
        if enforce_isolation is None:
            enforce_isolation = config.TENANT_ISOLATION_MODE == config.TENANT_ISOLATION_SHARED
        self._scope = TenantSessionScope(
            sessionmaker(bind=engine),
            ADMIN_SCOPE,
            enforce_isolation=enforce_isolation,
        )

    def load(self) -> list[TenantEntry]:
        with storage_errors("tenant_config_load"):
            with self._scope.admin_session() as db:
                rows = (
                    db.query(TenantConfigRow)
                    .filter(TenantConfigRow.enabled.is_(True))
                    .order_by(TenantConfigRow.tenant_id)
                    .all()
                )
                entries = [
                    {
                        "tenant_id": row.tenant_id,
                        "routing_key": row.routing_key,
                        "db_dsn": row.db_dsn,
                        "vector_store": row.vector_store,
                        "embedding_model": row.embedding_model,
                        "enabled_agents": list(row.enabled_agents or []),
                        "config": dict(row.config or {}),
                        "metadata": dict(row.metadata_ or {}),
                    }
                    for row in rows
                ]
        logger.info("tenant_configs_loaded", extra={"count": len(entries), "source": "database"})
        return entries


def build_tenant_source(engine: Optional[Engine] = None) -> TenantSource:
    if config.TENANT_SOURCE == "static":
        return StaticTenantSource.from_file(config.TENANTS_FILE)
    if engine is None:
        raise ValidationIssue("database tenant source requires an engine", field="engine", error_type="required")
    return DatabaseTenantSource(engine)
