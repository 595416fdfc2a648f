"""stash, manual adjustments and per-user category limits

Revision ID: 202609150800
Revises: 202609010900
Create Date: 2026-09-15 08:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202609150800"
down_revision = "202609010900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(
            sa.Column(
                "stashed_amount", sa.BigInteger(), nullable=False, server_default="0"
            )
        )
        batch_op.add_column(
            sa.Column(
                "manual_adjustment", sa.BigInteger(), nullable=False, server_default="0"
            )
        )
        batch_op.create_check_constraint(
            "ck_users_stash_non_negative", "stashed_amount >= 0"
        )

    op.create_table(
        "user_category_limits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("monthly_limit", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("user_id", "category_id", name="uq_user_category_limit"),
        sa.CheckConstraint(
            "monthly_limit >= 0", name="ck_user_category_limit_non_negative"
        ),
    )

    settings_table = sa.table(
        "app_settings",
        sa.column("key", sa.String),
        sa.column("value", sa.String),
    )
    op.bulk_insert(settings_table, [{"key": "stash_name", "value": "Stash"}])


def downgrade() -> None:
    op.execute("DELETE FROM app_settings WHERE key = 'stash_name'")
    op.drop_table("user_category_limits")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_constraint("ck_users_stash_non_negative", type_="check")
        batch_op.drop_column("manual_adjustment")
        batch_op.drop_column("stashed_amount")
