"""Initial schema for the ingestion engine.

Revision ID: 0001_initial_schema
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

import os

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "384"))


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "sources",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("config", sa.JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("schedule", sa.JSON()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_sync_status", sa.Text()),
        sa.Column("last_sync_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    op.create_table(
        "connector_runs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("source_id", sa.Text(), sa.ForeignKey("sources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("documents_added", sa.Integer(), server_default="0"),
        sa.Column("documents_updated", sa.Integer(), server_default="0"),
        sa.Column("documents_removed", sa.Integer(), server_default="0"),
        sa.Column("progress", sa.Integer(), server_default="0"),
        sa.Column("processed_items", sa.Integer(), server_default="0"),
        sa.Column("total_items", sa.Integer()),
        sa.Column("current_item", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.Column("log", sa.JSON(), server_default=sa.text("'[]'::json")),
    )
    op.create_index("ix_connector_runs_source_started", "connector_runs", ["source_id", "started_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("source_id", sa.Text(), sa.ForeignKey("sources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("url", sa.Text()),
        sa.Column("content_type", sa.Text()),
        sa.Column("attributes", sa.JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("last_modified", sa.DateTime(timezone=True)),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS)),
        sa.Column("indexed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("source_id", "external_id", name="uq_documents_source_external"),
    )


def downgrade() -> None:
    op.drop_table("documents")
    op.drop_index("ix_connector_runs_source_started", table_name="connector_runs")
    op.drop_table("connector_runs")
    op.drop_table("sources")
