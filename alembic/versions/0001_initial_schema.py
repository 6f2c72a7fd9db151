"""websets, versions, cells, jobs, rate limits and providers

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import context, op


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _is_offline() -> bool:
    try:
        return bool(context.is_offline_mode())
    except Exception:
        return False


def _inspector():
    bind = op.get_bind()
    return sa.inspect(bind)


def _has_table(name: str) -> bool:
    if _is_offline():
        return False
    return bool(_inspector().has_table(name))


def _create_index(name: str, table: str, cols: list[str]) -> None:
    if _is_offline():
        op.create_index(name, table, cols)
        return
    existing = {idx.get("name") for idx in _inspector().get_indexes(table)}
    if name not in existing:
        op.create_index(name, table, cols)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    if not _has_table("websets"):
        op.create_table(
            "websets",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("columns_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
            sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_by", sa.String(length=64), nullable=False, server_default=""),
            _ts("created_at"),
            _ts("updated_at"),
        )
    _create_index("ix_websets_status", "websets", ["status"])
    _create_index("ix_websets_created_by", "websets", ["created_by"])

    if not _has_table("webset_versions"):
        op.create_table(
            "webset_versions",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("webset_id", sa.String(length=32), sa.ForeignKey("websets.id"), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("snapshot_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("changed_by", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("change_description", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("webset_id", "version", name="uq_webset_versions_webset_version"),
        )
    _create_index("ix_webset_versions_webset_id", "webset_versions", ["webset_id"])
    _create_index("ix_webset_versions_created_at", "webset_versions", ["created_at"])

    if not _has_table("webset_cells"):
        op.create_table(
            "webset_cells",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("webset_id", sa.String(length=32), sa.ForeignKey("websets.id"), nullable=False),
            sa.Column("row_index", sa.Integer(), nullable=False),
            sa.Column("column_id", sa.String(length=128), nullable=False),
            sa.Column("value", sa.Text(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("version_id", sa.String(length=32), nullable=True),
            _ts("created_at"),
        )
    _create_index("ix_webset_cells_webset_id", "webset_cells", ["webset_id"])
    _create_index("ix_webset_cells_version_id", "webset_cells", ["version_id"])
    _create_index("ix_webset_cells_position", "webset_cells", ["webset_id", "row_index", "column_id"])

    if not _has_table("citations"):
        op.create_table(
            "citations",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("cell_id", sa.String(length=32), sa.ForeignKey("webset_cells.id"), nullable=False),
            sa.Column("url", sa.String(length=2048), nullable=False, server_default=""),
            sa.Column("title", sa.String(length=512), nullable=False, server_default=""),
            sa.Column("content_snippet", sa.Text(), nullable=False, server_default=""),
            sa.Column("search_provider_id", sa.String(length=32), nullable=True),
            _ts("created_at"),
        )
    _create_index("ix_citations_cell_id", "citations", ["cell_id"])

    if not _has_table("enrichment_jobs"):
        op.create_table(
            "enrichment_jobs",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("webset_id", sa.String(length=32), nullable=False),
            sa.Column("column_id", sa.String(length=128), nullable=False),
            sa.Column("rows_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("prompt", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_rows", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_rows", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("llm_provider_id", sa.String(length=32), nullable=True),
            sa.Column("search_provider_id", sa.String(length=32), nullable=True),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("0")),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("failures_json", sa.Text(), nullable=False, server_default="[]"),
            _ts("created_at"),
            _ts("started_at", nullable=True),
            _ts("finished_at", nullable=True),
            _ts("updated_at"),
        )
    _create_index("ix_enrichment_jobs_webset_id", "enrichment_jobs", ["webset_id"])
    _create_index("ix_enrichment_jobs_status", "enrichment_jobs", ["status"])
    _create_index("ix_enrichment_jobs_user_id", "enrichment_jobs", ["user_id"])
    _create_index("ix_enrichment_jobs_created_at", "enrichment_jobs", ["created_at"])

    if not _has_table("export_jobs"):
        op.create_table(
            "export_jobs",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("webset_id", sa.String(length=32), nullable=False),
            sa.Column("format", sa.String(length=16), nullable=False),
            sa.Column("file_name", sa.String(length=256), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("export_url", sa.String(length=1024), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
    _create_index("ix_export_jobs_webset_id", "export_jobs", ["webset_id"])
    _create_index("ix_export_jobs_status", "export_jobs", ["status"])
    _create_index("ix_export_jobs_created_at", "export_jobs", ["created_at"])

    if not _has_table("rate_limits"):
        op.create_table(
            "rate_limits",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("scope", sa.String(length=16), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("endpoint", sa.String(length=256), nullable=False),
            sa.Column("max_requests", sa.Integer(), nullable=False),
            sa.Column("window_ms", sa.BigInteger(), nullable=False),
            sa.Column("current_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("window_start_ms", sa.BigInteger(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("scope", "user_id", "endpoint", name="uq_rate_limits_scope_user_endpoint"),
        )

    if not _has_table("providers"):
        op.create_table(
            "providers",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("name", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("kind", sa.String(length=16), nullable=False),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("endpoint", sa.String(length=512), nullable=True),
            sa.Column("api_key_value", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
            sa.Column("rate_limit", sa.Integer(), nullable=True),
            sa.Column("daily_limit", sa.Integer(), nullable=True),
            sa.Column("config_json", sa.Text(), nullable=False, server_default="{}"),
            _ts("created_at"),
            _ts("updated_at"),
        )
    _create_index("ix_providers_kind", "providers", ["kind"])

    if not _has_table("provider_usage"):
        op.create_table(
            "provider_usage",
            sa.Column("id", sa.String(length=32), primary_key=True),
            _ts("ts"),
            sa.Column("provider_id", sa.String(length=32), nullable=False),
            sa.Column("provider_type", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("kind", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("model_name", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        )
    _create_index("ix_provider_usage_ts", "provider_usage", ["ts"])
    _create_index("ix_provider_usage_provider_id", "provider_usage", ["provider_id"])


def downgrade() -> None:
    for table in (
        "provider_usage",
        "providers",
        "rate_limits",
        "export_jobs",
        "enrichment_jobs",
        "citations",
        "webset_cells",
        "webset_versions",
        "websets",
    ):
        if _has_table(table):
            op.drop_table(table)
