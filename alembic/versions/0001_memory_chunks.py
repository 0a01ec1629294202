"""Create memory_chunks table.

Revision ID: 0001_memory_chunks
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

import core.config as config


revision = "0001_memory_chunks"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    id_type = postgresql.UUID(as_uuid=False) if is_postgres else sa.String(length=36)
    use_vector = is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"

    if use_vector:
        op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    embedding_type = Vector(config.EMBEDDING_DIM) if use_vector else json_type

    op.create_table(
        "memory_chunks",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("embedding", embedding_type, nullable=True),
        sa.Column("metadata", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('note', 'event', 'task', 'msg')",
            name="ck_memory_chunks_kind",
        ),
    )
    op.create_index("ix_memory_chunks_tenant_user", "memory_chunks", ["tenant_id", "user_id"])
    op.create_index("ix_memory_chunks_kind", "memory_chunks", ["kind"])
    op.create_index("ix_memory_chunks_created", "memory_chunks", ["created_at"])

    if use_vector:
        op.execute(
            "CREATE INDEX IF NOT EXISTS ix_memory_chunks_embedding "
            "ON memory_chunks USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
        )
    if is_postgres:
        op.execute(
            "CREATE INDEX IF NOT EXISTS ix_memory_chunks_text_fts "
            "ON memory_chunks USING gin (to_tsvector('english', text))"
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_memory_chunks_text_fts")
        op.execute("DROP INDEX IF EXISTS ix_memory_chunks_embedding")
    op.drop_index("ix_memory_chunks_created", table_name="memory_chunks")
    op.drop_index("ix_memory_chunks_kind", table_name="memory_chunks")
    op.drop_index("ix_memory_chunks_tenant_user", table_name="memory_chunks")
    op.drop_table("memory_chunks")
