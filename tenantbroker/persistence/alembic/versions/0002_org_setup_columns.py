"""org setup metadata and storage grace deadline

Revision ID: 0002_org_setup_columns
Revises: 0001_control_plane
Create Date: 2026-10-19 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_org_setup_columns"
down_revision = "0001_control_plane"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Credential saves keep working on databases that have not run this revision yet.
    op.add_column("organizations", sa.Column("dedicated_key_saved_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("organizations", sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("organizations", sa.Column("setup_completed", sa.Boolean(), nullable=True))
    op.add_column("org_settings", sa.Column("storage_grace_ends_at", sa.DateTime(timezone=True), nullable=True))
    # Partial index keeps the expired-grace sweep cheap.
    op.create_index(
        "ix_org_settings_storage_grace_ends_at",
        "org_settings",
        ["storage_grace_ends_at"],
        postgresql_where=sa.text("storage_grace_ends_at IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_org_settings_storage_grace_ends_at", table_name="org_settings")
    op.drop_column("org_settings", "storage_grace_ends_at")
    op.drop_column("organizations", "setup_completed")
    op.drop_column("organizations", "verified_at")
    op.drop_column("organizations", "dedicated_key_saved_at")
