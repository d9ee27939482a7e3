"""Create scans and scan_results tables.

Results cascade-delete with their scan; ``rank`` preserves the stable
descending order the pipeline persisted.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "5b2f0c9e7a11"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

_UTC_NOW = sa.text("timezone('utc', now())")


def upgrade() -> None:
    op.create_table(
        "scans",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("text_input", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("text_embedding", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="processing"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_scans"),
        sa.CheckConstraint("status IN ('processing', 'completed', 'failed')", name="ck_scans_status"),
    )
    op.create_index("ix_scans_user_id", "scans", ["user_id"], unique=False)

    op.create_table(
        "scan_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("owner", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        sa.Column("similarity_score", sa.Numeric(5, 2), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("legal_status", sa.Text(), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("founder_name", sa.Text(), nullable=True),
        sa.Column("founder_country", sa.Text(), nullable=True),
        sa.Column(
            "founder_social_media",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_scan_results"),
        sa.ForeignKeyConstraint(
            ["scan_id"], ["scans.id"], name="fk_scan_results_scan_id", ondelete="CASCADE"
        ),
        sa.CheckConstraint(
            "similarity_score >= 0 AND similarity_score <= 100",
            name="ck_scan_results_score_range",
        ),
    )
    op.create_index("ix_scan_results_scan_id", "scan_results", ["scan_id"], unique=False)
    logger.info("scan.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_scan_results_scan_id", table_name="scan_results")
    op.drop_table("scan_results")
    op.drop_index("ix_scans_user_id", table_name="scans")
    op.drop_table("scans")
