"""initial search gate schema: user, anonymous_search_quota, search_history

Revision ID: 3a7c9e1d2b40
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3a7c9e1d2b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("auth_subject", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("auth_subject"),
    )

    op.create_table(
        "anonymous_search_quota",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identifier", sa.String(length=64), nullable=False),
        sa.Column("search_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_search_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("identifier", name="uq_anonymous_search_quota_identifier"),
        sa.CheckConstraint("search_count >= 0", name="ck_anonymous_search_quota_count"),
    )

    bind = op.get_bind()
    results_type = sa.Text()
    if bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import JSONB
        results_type = JSONB()

    op.create_table(
        "search_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=True),
        sa.Column(
            "anonymous_id",
            sa.Integer(),
            sa.ForeignKey("anonymous_search_quota.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("location", sa.String(length=200), nullable=False),
        sa.Column("query", sa.String(length=200), nullable=True),
        sa.Column("results_json", results_type, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "(user_id IS NULL) <> (anonymous_id IS NULL)",
            name="ck_search_history_single_owner",
        ),
    )
    op.create_index("ix_search_history_created_at", "search_history", ["created_at"])
    op.create_index("ix_search_history_deleted_at", "search_history", ["deleted_at"])
    op.create_index("ix_search_history_user_created", "search_history", ["user_id", sa.text("created_at DESC")])
    op.create_index(
        "ix_search_history_anonymous_created",
        "search_history",
        ["anonymous_id", sa.text("created_at DESC")],
    )


def downgrade():
    op.drop_index("ix_search_history_anonymous_created", table_name="search_history")
    op.drop_index("ix_search_history_user_created", table_name="search_history")
    op.drop_index("ix_search_history_deleted_at", table_name="search_history")
    op.drop_index("ix_search_history_created_at", table_name="search_history")
    op.drop_table("search_history")
    op.drop_table("anonymous_search_quota")
    op.drop_table("user")
