"""identity and replaceable content tables

Revision ID: 5b1c0e7a9d21
Revises:
Create Date: 2026-10-17 09:12:44.518203

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1c0e7a9d21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create user, resource, course and lesson tables."""
    op.create_table(
        "user_account",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("pubkey", sa.String(length=64), nullable=False),
        sa.Column("privkey", sa.Text(), nullable=True),
        sa.Column("custody", sa.String(length=16), nullable=False),
        sa.Column("primary_provider", sa.String(length=16), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=True),
        sa.Column("avatar", sa.Text(), nullable=True),
        sa.Column("reconnect_token_hash", sa.String(length=64), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_user_account_pubkey", "user_account", ["pubkey"], unique=True)
    op.create_index(
        "ix_user_account_reconnect_token_hash",
        "user_account",
        ["reconnect_token_hash"],
        unique=True,
    )

    op.create_table(
        "resource",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("user_account.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note_id", sa.String(length=64), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
    )
    op.create_index("ix_resource_user_id", "resource", ["user_id"])

    op.create_table(
        "course",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("user_account.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note_id", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_course_user_id", "course", ["user_id"])

    op.create_table(
        "lesson",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "course_id",
            sa.String(length=64),
            sa.ForeignKey("course.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "resource_id",
            sa.String(length=64),
            sa.ForeignKey("resource.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("index", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("course_id", "index", name="uq_lesson_course_index"),
    )


def downgrade() -> None:
    """Drop all tables created by this revision."""
    op.drop_table("lesson")
    op.drop_index("ix_course_user_id", table_name="course")
    op.drop_table("course")
    op.drop_index("ix_resource_user_id", table_name="resource")
    op.drop_table("resource")
    op.drop_index("ix_user_account_reconnect_token_hash", table_name="user_account")
    op.drop_index("ix_user_account_pubkey", table_name="user_account")
    op.drop_table("user_account")
