"""
Database initialization, migration helpers and tenant-scoped sessions.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import core.config as config
from core.errors import StorageUnavailable


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def _get_alembic_config():
    from alembic.config import Config

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    alembic_cfg = Config(os.path.join(base_dir, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(base_dir, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return alembic_cfg


def _get_schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    alembic_cfg = _get_alembic_config()
    script = ScriptDirectory.from_config(alembic_cfg)
    head_revision = script.get_current_head()
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        current_revision = context.get_current_revision()
    return current_revision, head_revision


def _ensure_schema_up_to_date(engine) -> None:
    from alembic import command

    current_rev, head_rev = _get_schema_revisions(engine)
    if current_rev == head_rev:
        return

    if config.AUTO_MIGRATE_ON_STARTUP:
        alembic_cfg = _get_alembic_config()
        command.upgrade(alembic_cfg, "head")
        new_current, _ = _get_schema_revisions(engine)
        if new_current != head_rev:
            raise RuntimeError("Database migration did not reach expected revision")
    else:
        raise RuntimeError(
            f"Database schema out of date (current={current_rev}, expected={head_rev}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true for dev."
        )


def create_engine_for_url(url: str) -> Engine:
    engine_kwargs = {"pool_pre_ping": True}
    if url.lower().startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


def init_db() -> None:
    """Initialize the central database connection and apply migrations."""
    config.validate_and_prepare_config()

    config.logger.info("Connecting to database...")
    DB.engine = create_engine_for_url(config.DATABASE_URL)
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    if (
        config.AUTO_CREATE_EXTENSIONS
        and config.DB_BACKEND == "postgres"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    ):
        config.logger.info("Ensuring pgvector extension...")
        with DB.engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()
    else:
        config.logger.info("Skipping pgvector extension creation")

    _ensure_schema_up_to_date(DB.engine)

    config.logger.info("Database initialized")


@contextmanager
def storage_errors(operation: str, tenant_id: Optional[str] = None) -> Iterator[None]:
    """Translate driver/ORM failures into StorageUnavailable."""
    try:
        yield
    except SQLAlchemyError as exc:
        config.logger.error(
            "storage_operation_failed",
            extra={"operation": operation, "tenant_id": tenant_id, "error": type(exc).__name__},
        )
        raise StorageUnavailable(f"{operation} failed: {exc}") from exc


# =============================================================================
# Tenant isolation
# =============================================================================

class TenantSessionScope:
    """
    Scoped tenant context for row-level isolation.

    Every tenant session first calls set_tenant_context() so that RLS policies
    only expose the owning tenant's rows. Administrative sessions that enumerate
    all tenants call clear_tenant_context() instead. Isolation statements are
    only issued on postgres and only when enforcement is enabled.
    """

    def __init__(self, session_factory, tenant_id: str, enforce_isolation: bool = False):
        self._session_factory = session_factory
        self.tenant_id = tenant_id
        self.enforce_isolation = enforce_isolation

    def _isolation_supported(self, db: Session) -> bool:
        return self.enforce_isolation and db.get_bind().dialect.name == "postgresql"

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            if self._isolation_supported(db):
                db.execute(
                    text("SELECT set_tenant_context(:tenant_id)"),
                    {"tenant_id": self.tenant_id},
                )
            yield db
        finally:
            db.close()

    @contextmanager
    def admin_session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            if self._isolation_supported(db):
                db.execute(text("SELECT clear_tenant_context()"))
            yield db
        finally:
            db.close()


class TenantStorage:
    """Tenant-scoped relational storage handle."""

    def __init__(
        self,
        tenant_id: str,
        engine: Engine,
        *,
        enforce_isolation: bool = False,
        owns_engine: bool = True,
    ):
        self.tenant_id = tenant_id
        self.engine = engine
        self.owns_engine = owns_engine
        self.scope = TenantSessionScope(
            sessionmaker(bind=engine),
            tenant_id,
            enforce_isolation=enforce_isolation,
        )
        self.closed = False

    def ping(self) -> None:
        with storage_errors("ping", self.tenant_id):
            with self.scope.session() as db:
                db.execute(text("SELECT 1"))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.owns_engine:
            self.engine.dispose()


def open_dedicated_storage(tenant_id: str, dsn: str) -> TenantStorage:
    """Open a storage handle that owns its own connection pool."""
    storage = TenantStorage(tenant_id, create_engine_for_url(dsn), owns_engine=True)
    try:
        storage.ping()
    except StorageUnavailable:
        storage.close()
        raise
    return storage


def open_shared_storage(tenant_id: str, engine: Engine) -> TenantStorage:
    """Wrap the shared engine with row-level isolation for one tenant."""
    return TenantStorage(tenant_id, engine, enforce_isolation=True, owns_engine=False)
