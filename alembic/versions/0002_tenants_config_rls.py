"""Add tenants_config table and row-level tenant isolation.

Revision ID: 0002_tenants_config_rls
Revises: 0001_memory_chunks
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_tenants_config_rls"
down_revision = "0001_memory_chunks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    id_type = postgresql.UUID(as_uuid=False) if is_postgres else sa.String(length=36)

    op.create_table(
        "tenants_config",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("routing_key", sa.String(length=100), nullable=False, unique=True),
        sa.Column("db_dsn", sa.Text()),
        sa.Column(
            "embedding_model",
            sa.String(length=255),
            nullable=False,
            server_default="text-embedding-ada-002",
        ),
        sa.Column("vector_store", sa.String(length=50), nullable=False, server_default="pgvector"),
        sa.Column("enabled_agents", json_type),
        sa.Column("config", json_type),
        sa.Column("metadata", json_type),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "vector_store IN ('pgvector', 'sql_fallback')",
            name="ck_tenants_config_vector_store",
        ),
    )
    op.create_index("ix_tenants_config_enabled", "tenants_config", ["enabled"])

    if not is_postgres:
        return

    op.execute(
        """
        CREATE OR REPLACE FUNCTION set_tenant_context(tenant_id_param TEXT)
        RETURNS void AS $$
        BEGIN
            PERFORM set_config('app.current_tenant', tenant_id_param, false);
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION clear_tenant_context()
        RETURNS void AS $$
        BEGIN
            PERFORM set_config('app.current_tenant', '', false);
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER
        """
    )

    op.execute("ALTER TABLE memory_chunks ENABLE ROW LEVEL SECURITY")
    op.execute(
        """
        CREATE POLICY memory_chunks_tenant_isolation ON memory_chunks
            FOR ALL
            USING (tenant_id = current_setting('app.current_tenant', true))
        """
    )
    # An empty context is the administrative scope used to enumerate tenants.
    op.execute("ALTER TABLE tenants_config ENABLE ROW LEVEL SECURITY")
    op.execute(
        """
        CREATE POLICY tenant_config_isolation ON tenants_config
            FOR ALL
            USING (
                COALESCE(current_setting('app.current_tenant', true), '') = ''
                OR tenant_id = current_setting('app.current_tenant', true)
            )
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP POLICY IF EXISTS tenant_config_isolation ON tenants_config")
        op.execute("DROP POLICY IF EXISTS memory_chunks_tenant_isolation ON memory_chunks")
        op.execute("ALTER TABLE memory_chunks DISABLE ROW LEVEL SECURITY")
        op.execute("DROP FUNCTION IF EXISTS clear_tenant_context()")
        op.execute("DROP FUNCTION IF EXISTS set_tenant_context(TEXT)")
    op.drop_index("ix_tenants_config_enabled", table_name="tenants_config")
    op.drop_table("tenants_config")
