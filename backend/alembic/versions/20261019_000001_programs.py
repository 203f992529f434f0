"""Create tenancy, role and program tables.

Revision ID: 0001_programs
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0001_programs"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    # --- organizations / coalitions ---
    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "coalitions",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("settings", JSONB(), server_default="{}", nullable=False),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- roles ---
    op.create_table(
        "admins",
        _id_column(),
        sa.Column("user_id", UUID(), nullable=False),
        sa.Column("scope_type", sa.Text(), nullable=False),
        sa.Column("scope_id", UUID(), nullable=False),
        sa.Column("status", sa.Text(), server_default="active", nullable=False),
        _created_at(),
        sa.CheckConstraint(
            "scope_type IN ('org','coalition','program')",
            name="ck_admins_scope_type",
        ),
        sa.UniqueConstraint("user_id", "scope_type", "scope_id", name="uq_admins_scope"),
    )
    op.create_index("ix_admins_user_id", "admins", ["user_id"])
    op.create_table(
        "superadmins",
        sa.Column("user_id", UUID(), primary_key=True),
        _created_at(),
    )

    # --- programs ---
    op.create_table(
        "programs",
        _id_column(),
        sa.Column(
            "organization_id",
            UUID(),
            sa.ForeignKey("organizations.id"),
            nullable=False,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("open_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", JSONB(), server_default="{}", nullable=False),
        sa.Column("published", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("published_scope", sa.Text(), nullable=True),
        sa.Column("published_by", UUID(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "published_coalition_id",
            UUID(),
            sa.ForeignKey("coalitions.id"),
            nullable=True,
        ),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "published_scope IS NULL OR published_scope IN ('org','coalition')",
            name="ck_programs_published_scope",
        ),
    )
    op.create_index("ix_programs_organization_id", "programs", ["organization_id"])
    op.create_index(
        "ix_programs_review_status",
        "programs",
        [sa.text("(metadata->>'review_status')")],
    )

    # --- program_status_history ---
    op.create_table(
        "program_status_history",
        _id_column(),
        sa.Column(
            "program_id",
            UUID(),
            sa.ForeignKey("programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("old_status", sa.Text(), nullable=True),
        sa.Column("new_status", sa.Text(), nullable=False),
        sa.Column("changed_by", UUID(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_program_status_history_program_id",
        "program_status_history",
        ["program_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_program_status_history_program_id", table_name="program_status_history")
    op.drop_table("program_status_history")
    op.drop_index("ix_programs_review_status", table_name="programs")
    op.drop_index("ix_programs_organization_id", table_name="programs")
    op.drop_table("programs")
    op.drop_table("superadmins")
    op.drop_index("ix_admins_user_id", table_name="admins")
    op.drop_table("admins")
    op.drop_table("coalitions")
    op.drop_table("organizations")
