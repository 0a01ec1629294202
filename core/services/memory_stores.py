"""
Memory store backends.

Two interchangeable implementations of the MemoryStore contract:

- PgVectorMemoryStore ranks by cosine similarity (1 - cosine distance) using
  pgvector. Scores are similarities in [0, 1].
- LexicalMemoryStore is the degraded fallback for deployments without vector
  indexing. It ignores embeddings and ranks by full-text relevance, falling back
  further to a substring check (1.0 for a text match, 0.5 for a kind match).
  Its scores are best-effort and are NOT comparable to PgVectorMemoryStore
  scores; every hit carries the producing backend name so callers can tell.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Sequence

from sqlalchemy import case, text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import TenantSessionScope, TenantStorage, storage_errors
from core.errors import NotFound, ValidationIssue
from core.models import MemoryChunk
from core.services.memory_shared import utc_now
from core.validators import validate_memory_kind

logger = config.logger

BACKEND_PGVECTOR = "pgvector"
BACKEND_SQL_FALLBACK = "sql_fallback"
DEFAULT_LEXICAL_TERM = "memory"
UPDATABLE_FIELDS = ("text", "metadata", "kind", "embedding")


@dataclass
class MemoryItem:
    kind: str
    text: str
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None


@dataclass
class SearchFilter:
    kinds: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    meta: dict[str, str] = field(default_factory=dict)


@dataclass
class SearchOptions:
    top_k: int = 5
    min_score: float = 0.0
    filter: Optional[SearchFilter] = None
    query_text: Optional[str] = None


@dataclass(frozen=True)
class MemoryHit:
    id: str
    kind: str
    text: str
    score: float
    metadata: dict
    backend: str

    def with_score(self, score: float) -> "MemoryHit":
        return MemoryHit(
            id=self.id,
            kind=self.kind,
            text=self.text,
            score=score,
            metadata=self.metadata,
            backend=self.backend,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "text": self.text,
            "score": round(self.score, 4),
            "metadata": self.metadata,
            "backend": self.backend,
        }


@dataclass(frozen=True)
class MemoryRecord:
    id: str
    tenant_id: str
    user_id: str
    kind: str
    text: str
    metadata: dict
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "text": self.text,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class MemoryStore(Protocol):
    backend: str

    def upsert(self, tenant_id: str, user_id: str, items: Sequence[MemoryItem]) -> list[str]: ...

    def search(
        self,
        tenant_id: str,
        user_id: str,
        query_embedding: Optional[Sequence[float]],
        options: Optional[SearchOptions] = None,
    ) -> list[MemoryHit]: ...

    def get_by_id(self, tenant_id: str, user_id: str, memory_id: str) -> MemoryRecord: ...

    def update_by_id(self, tenant_id: str, user_id: str, memory_id: str, fields: dict) -> None: ...

    def delete_by_id(self, tenant_id: str, user_id: str, memory_id: str) -> None: ...

    def close(self) -> None: ...


def metadata_matches_tags(metadata: Optional[object], tags: Iterable[str]) -> bool:
    tag_set = set(tags)
    if not tag_set:
        return True
    if isinstance(metadata, list):
        return bool(tag_set.intersection({str(item) for item in metadata}))
    if isinstance(metadata, dict):
        meta_tags = metadata.get("tags", [])
        if isinstance(meta_tags, list):
            return bool(tag_set.intersection({str(item) for item in meta_tags}))
    return False


def _normalize_memory_id(memory_id: object) -> str:
    try:
        return str(uuid.UUID(str(memory_id)))
    except (TypeError, ValueError) as exc:
        raise NotFound(
            f"memory chunk not found: {memory_id}",
            resource="memory_chunk",
            resource_id=str(memory_id),
        ) from exc


def _record_from_row(row: MemoryChunk) -> MemoryRecord:
    return MemoryRecord(
        id=str(row.id),
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        kind=row.kind,
        text=row.text,
        metadata=dict(row.metadata_ or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class _SqlMemoryStore:
    """Shared CRUD for both backends; subclasses own search and embeddings."""

    backend = ""
    stores_embeddings = False

    def __init__(self, scope: TenantSessionScope):
        self._scope = scope
        self.closed = False

    @property
    def tenant_id(self) -> str:
        return self._scope.tenant_id

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self._scope.tenant_id:
            raise ValidationIssue(
                "memory store is bound to a different tenant",
                field="tenant_id",
                error_type="tenant_mismatch",
            )

    def _row_embedding(self, item: MemoryItem) -> Optional[list[float]]:
        return None

    def upsert(self, tenant_id: str, user_id: str, items: Sequence[MemoryItem]) -> list[str]:
        self._check_tenant(tenant_id)
        if not items:
            return []
        rows = []
        for item in items:
            validate_memory_kind(item.kind)
            if self.stores_embeddings and not item.embedding:
                logger.warning(
                    "memory_item_missing_embedding",
                    extra={"tenant_id": tenant_id, "kind": item.kind, "backend": self.backend},
                )
                continue
            metadata = {key: value for key, value in (item.metadata or {}).items() if key != "embedding"}
            rows.append(
                MemoryChunk(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    user_id=user_id,
                    kind=item.kind,
                    text=item.text,
                    embedding=self._row_embedding(item),
                    metadata_=metadata,
                )
            )
        if not rows:
            return []
        ids = [row.id for row in rows]
        with storage_errors("memory_upsert", tenant_id):
            with self._scope.session() as db:
                db.add_all(rows)
                db.commit()
        logger.debug(
            "memory_items_upserted",
            extra={"tenant_id": tenant_id, "count": len(ids), "backend": self.backend},
        )
        return ids

    def get_by_id(self, tenant_id: str, user_id: str, memory_id: str) -> MemoryRecord:
        self._check_tenant(tenant_id)
        normalized = _normalize_memory_id(memory_id)
        with storage_errors("memory_get", tenant_id):
            with self._scope.session() as db:
                row = (
                    db.query(MemoryChunk)
                    .filter(MemoryChunk.tenant_id == tenant_id)
                    .filter(MemoryChunk.user_id == user_id)
                    .filter(MemoryChunk.id == normalized)
                    .first()
                )
                if row is None:
                    raise NotFound(
                        f"memory chunk not found: {memory_id}",
                        resource="memory_chunk",
                        resource_id=str(memory_id),
                    )
                return _record_from_row(row)

    def update_by_id(self, tenant_id: str, user_id: str, memory_id: str, fields: dict) -> None:
        """Apply only the supplied fields; text changes do not re-embed here."""
        self._check_tenant(tenant_id)
        values: dict[str, Any] = {}
        if "text" in fields:
            values["text"] = fields["text"]
        if "metadata" in fields:
            values["metadata_"] = dict(fields["metadata"] or {})
        if "kind" in fields:
            validate_memory_kind(fields["kind"])
            values["kind"] = fields["kind"]
        if "embedding" in fields and self.stores_embeddings and fields["embedding"]:
            values["embedding"] = list(fields["embedding"])
        if not values:
            return

        normalized = _normalize_memory_id(memory_id)
        with storage_errors("memory_update", tenant_id):
            with self._scope.session() as db:
                row = (
                    db.query(MemoryChunk)
                    .filter(MemoryChunk.tenant_id == tenant_id)
                    .filter(MemoryChunk.user_id == user_id)
                    .filter(MemoryChunk.id == normalized)
                    .first()
                )
                if row is None:
                    raise NotFound(
                        f"memory chunk not found: {memory_id}",
                        resource="memory_chunk",
                        resource_id=str(memory_id),
                    )
                for attr, value in values.items():
                    setattr(row, attr, value)
                row.updated_at = utc_now()
                db.commit()
        logger.debug(
            "memory_chunk_updated",
            extra={"tenant_id": tenant_id, "fields": sorted(fields), "backend": self.backend},
        )

    def delete_by_id(self, tenant_id: str, user_id: str, memory_id: str) -> None:
        self._check_tenant(tenant_id)
        normalized = _normalize_memory_id(memory_id)
        with storage_errors("memory_delete", tenant_id):
            with self._scope.session() as db:
                deleted = (
                    db.query(MemoryChunk)
                    .filter(MemoryChunk.tenant_id == tenant_id)
                    .filter(MemoryChunk.user_id == user_id)
                    .filter(MemoryChunk.id == normalized)
                    .delete(synchronize_session=False)
                )
                db.commit()
        if deleted == 0:
            raise NotFound(
                f"memory chunk not found: {memory_id}",
                resource="memory_chunk",
                resource_id=str(memory_id),
            )
        logger.debug("memory_chunk_deleted", extra={"tenant_id": tenant_id, "backend": self.backend})

    def close(self) -> None:
        # The connection pool belongs to the tenant storage handle.
        self.closed = True


def _filter_clauses(options: SearchOptions, params: dict) -> list[str]:
    clauses: list[str] = []
    search_filter = options.filter
    if search_filter is None:
        return clauses
    if search_filter.kinds:
        clauses.append("AND kind = ANY(:kinds)")
        params["kinds"] = list(search_filter.kinds)
    if search_filter.tags:
        clauses.append(
            "AND EXISTS (SELECT 1 FROM jsonb_array_elements_text("
            "COALESCE(metadata->'tags', CAST('[]' AS jsonb))) AS tag WHERE tag = ANY(:tags))"
        )
        params["tags"] = list(search_filter.tags)
    for index, (key, value) in enumerate(sorted(search_filter.meta.items())):
        clauses.append(f"AND metadata->>:meta_key_{index} = :meta_value_{index}")
        params[f"meta_key_{index}"] = key
        params[f"meta_value_{index}"] = str(value)
    return clauses


def _hits_from_rows(rows, backend: str) -> list[MemoryHit]:
    return [
        MemoryHit(
            id=str(row.id),
            kind=row.kind,
            text=row.text,
            score=float(row.score),
            metadata=dict(row.metadata or {}),
            backend=backend,
        )
        for row in rows
    ]


class PgVectorMemoryStore(_SqlMemoryStore):
    """Backend A: cosine-similarity ranking with pgvector."""

    backend = BACKEND_PGVECTOR
    stores_embeddings = True

    def _row_embedding(self, item: MemoryItem) -> Optional[list[float]]:
        return list(item.embedding) if item.embedding else None

    def search(
        self,
        tenant_id: str,
        user_id: str,
        query_embedding: Optional[Sequence[float]],
        options: Optional[SearchOptions] = None,
    ) -> list[MemoryHit]:
        self._check_tenant(tenant_id)
        options = options or SearchOptions(top_k=5, min_score=0.0)
        if not query_embedding:
            raise ValidationIssue(
                "query embedding is required for vector search",
                field="query_embedding",
                error_type="required",
            )

        params: dict[str, Any] = {
            "embedding": str([float(value) for value in query_embedding]),
            "tenant_id": tenant_id,
            "user_id": user_id,
        }
        clauses = _filter_clauses(options, params)
        if options.min_score > 0:
            clauses.append("AND (1 - (embedding <=> cast(:embedding as vector))) >= :min_score")
            params["min_score"] = options.min_score
        limit_sql = ""
        if options.top_k > 0:
            limit_sql = "LIMIT :top_k"
            params["top_k"] = options.top_k

        sql = text(
            """
            SELECT id, kind, text, metadata,
                1 - (embedding <=> cast(:embedding as vector)) AS score
            FROM memory_chunks
            WHERE tenant_id = :tenant_id AND user_id = :user_id
            AND embedding IS NOT NULL
            """
            + "\n".join(clauses)
            + """
            ORDER BY score DESC
            """
            + limit_sql
        )
        with storage_errors("memory_search", tenant_id):
            with self._scope.session() as db:
                rows = db.execute(sql, params).fetchall()
        hits = _hits_from_rows(rows, self.backend)
        logger.debug(
            "similarity_search_completed",
            extra={"tenant_id": tenant_id, "hits": len(hits)},
        )
        return hits


class LexicalMemoryStore(_SqlMemoryStore):
    """Backend B: text relevance without embeddings (best-effort only)."""

    backend = BACKEND_SQL_FALLBACK
    stores_embeddings = False

    @staticmethod
    def _search_term(options: SearchOptions) -> str:
        if options.query_text and options.query_text.strip():
            return options.query_text.strip()
        if options.filter is not None and options.filter.kinds:
            return options.filter.kinds[0]
        return DEFAULT_LEXICAL_TERM

    def search(
        self,
        tenant_id: str,
        user_id: str,
        query_embedding: Optional[Sequence[float]],
        options: Optional[SearchOptions] = None,
    ) -> list[MemoryHit]:
        self._check_tenant(tenant_id)
        options = options or SearchOptions(top_k=5, min_score=0.0)
        term = self._search_term(options)

        with storage_errors("memory_search", tenant_id):
            with self._scope.session() as db:
                hits: list[MemoryHit] = []
                if db.get_bind().dialect.name == "postgresql":
                    hits = self._full_text_search(db, tenant_id, user_id, term, options)
                if not hits:
                    hits = self._containment_search(db, tenant_id, user_id, term, options)
        logger.debug(
            "text_search_completed",
            extra={"tenant_id": tenant_id, "hits": len(hits)},
        )
        return hits

    def _full_text_search(self, db, tenant_id: str, user_id: str, term: str, options: SearchOptions) -> list[MemoryHit]:
        params: dict[str, Any] = {"term": term, "tenant_id": tenant_id, "user_id": user_id}
        clauses = _filter_clauses(options, params)
        rank_sql = "ts_rank_cd(to_tsvector('english', text), plainto_tsquery('english', :term))"
        if options.min_score > 0:
            clauses.append(f"AND {rank_sql} >= :min_score")
            params["min_score"] = options.min_score
        limit_sql = ""
        if options.top_k > 0:
            limit_sql = "LIMIT :top_k"
            params["top_k"] = options.top_k
        sql = text(
            f"""
            SELECT id, kind, text, metadata, {rank_sql} AS score
            FROM memory_chunks
            WHERE tenant_id = :tenant_id AND user_id = :user_id
            AND to_tsvector('english', text) @@ plainto_tsquery('english', :term)
            """
            + "\n".join(clauses)
            + """
            ORDER BY score DESC
            """
            + limit_sql
        )
        try:
            with db.begin_nested():
                rows = db.execute(sql, params).fetchall()
        except SQLAlchemyError as exc:
            logger.warning(
                "full_text_search_failed",
                extra={"tenant_id": tenant_id, "error": type(exc).__name__},
            )
            return []
        return _hits_from_rows(rows, self.backend)

    def _containment_search(self, db, tenant_id: str, user_id: str, term: str, options: SearchOptions) -> list[MemoryHit]:
        pattern = f"%{term}%"
        score = case((MemoryChunk.text.ilike(pattern), 1.0), else_=0.5).label("score")
        query = (
            db.query(MemoryChunk, score)
            .filter(MemoryChunk.tenant_id == tenant_id)
            .filter(MemoryChunk.user_id == user_id)
            .filter(MemoryChunk.text.ilike(pattern) | MemoryChunk.kind.ilike(pattern))
        )
        search_filter = options.filter
        if search_filter is not None and search_filter.kinds:
            query = query.filter(MemoryChunk.kind.in_(search_filter.kinds))
        query = query.order_by(score.desc(), MemoryChunk.created_at.desc())
        needs_python_filter = search_filter is not None and (search_filter.tags or search_filter.meta)
        if options.top_k > 0 and not needs_python_filter:
            query = query.limit(options.top_k)

        hits = []
        for row, row_score in query.all():
            metadata = dict(row.metadata_ or {})
            if search_filter is not None:
                if not metadata_matches_tags(metadata, search_filter.tags):
                    continue
                if any(str(metadata.get(key)) != str(value) for key, value in search_filter.meta.items()):
                    continue
            hits.append(
                MemoryHit(
                    id=str(row.id),
                    kind=row.kind,
                    text=row.text,
                    score=float(row_score),
                    metadata=metadata,
                    backend=self.backend,
                )
            )
        if options.top_k > 0:
            hits = hits[: options.top_k]
        return hits


_STORE_TYPES = {
    BACKEND_PGVECTOR: PgVectorMemoryStore,
    BACKEND_SQL_FALLBACK: LexicalMemoryStore,
}


def vector_search_available(storage: TenantStorage, vector_backend: Optional[str] = None) -> bool:
    """pgvector search needs a postgres engine and a pgvector-enabled deployment."""
    effective = vector_backend or config.VECTOR_BACKEND_EFFECTIVE
    return effective == BACKEND_PGVECTOR and storage.engine.dialect.name == "postgresql"


def build_memory_store(
    kind: str,
    storage: TenantStorage,
    vector_backend: Optional[str] = None,
) -> _SqlMemoryStore:
    """
    Pick the memory store implementation for a tenant.

    A tenant asking for pgvector on a deployment without vector indexing
    (sqlite, or VECTOR_BACKEND=sql_fallback) gets the lexical store instead.
    """
    requested = (kind or "").strip().lower()
    store_type = _STORE_TYPES.get(requested)
    if store_type is None:
        raise ValidationIssue(
            f"unsupported vector store type: {kind}",
            field="vector_store",
            error_type="invalid_enum",
        )
    if store_type is PgVectorMemoryStore and not vector_search_available(storage, vector_backend):
        logger.warning(
            "vector_store_degraded",
            extra={
                "tenant_id": storage.tenant_id,
                "requested": requested,
                "effective": BACKEND_SQL_FALLBACK,
                "dialect": storage.engine.dialect.name,
            },
        )
        store_type = LexicalMemoryStore
    return store_type(storage.scope)
