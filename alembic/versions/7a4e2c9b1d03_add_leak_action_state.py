"""add leak action state table

Revision ID: 7a4e2c9b1d03
Revises: 3f1c9a7d2e10
Create Date: 2026-10-19 15:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "7a4e2c9b1d03"
down_revision = "3f1c9a7d2e10"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "leak_action_state",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("action_key", sa.String(length=120), nullable=False),
        sa.Column("leak_type", sa.String(length=40), nullable=False),
        sa.Column("is_done", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["connected_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "account_id", "action_key", name="uq_leak_action_state_user_account_action"
        ),
    )
    op.create_index(
        "ix_leak_action_state_account_user", "leak_action_state", ["account_id", "user_id"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_leak_action_state_account_user", table_name="leak_action_state")
    op.drop_table("leak_action_state")
