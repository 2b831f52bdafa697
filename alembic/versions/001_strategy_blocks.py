"""Strategy block tree schema.

Creates:
1. strategies: user-owned strategy, root_block_id anchors the tree
2. conditions: indicator comparison leaves (self-reference for target indicator)
3. actions: effect leaves
4. strategy_blocks: typed tree nodes with parent pointers and sibling order

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # 1. strategies
    op.create_table(
        "strategies",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.false(), nullable=False),
        # Not a foreign key: strategy_blocks.strategy_id already points the other way
        sa.Column("root_block_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("root_block_id", name="uq_strategies_root_block_id"),
    )
    op.create_index("ix_strategies_owner_id", "strategies", ["owner_id"])

    # 2. conditions
    op.create_table(
        "conditions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("indicator_type", sa.String(50), nullable=False),
        sa.Column("symbol", sa.String(20), nullable=True),
        sa.Column("interval", sa.String(20), nullable=True),
        sa.Column("data_source", sa.String(50), nullable=True),
        sa.Column("data_key", sa.String(50), nullable=True),
        sa.Column("parameters", JSON_TYPE, nullable=False),
        sa.Column("operator", sa.String(30), nullable=False),
        sa.Column("target_value", sa.Float(), nullable=True),
        sa.Column("target_condition_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["target_condition_id"], ["conditions.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("target_condition_id", name="uq_conditions_target_condition_id"),
    )

    # 3. actions
    op.create_table(
        "actions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("parameters", JSON_TYPE, nullable=False),
        sa.Column("order", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # 4. strategy_blocks
    op.create_table(
        "strategy_blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("strategy_id", sa.Integer(), nullable=False),
        sa.Column("block_type", sa.String(20), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("condition_id", sa.Integer(), nullable=True),
        sa.Column("action_id", sa.Integer(), nullable=True),
        sa.Column("parameters", JSON_TYPE, nullable=False),
        sa.Column("order", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["strategy_id"], ["strategies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["strategy_blocks.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["condition_id"], ["conditions.id"]),
        sa.ForeignKeyConstraint(["action_id"], ["actions.id"]),
        sa.UniqueConstraint("condition_id", name="uq_strategy_blocks_condition_id"),
        sa.UniqueConstraint("action_id", name="uq_strategy_blocks_action_id"),
        sa.UniqueConstraint("parent_id", "order", name="uq_strategy_blocks_parent_order"),
        sa.CheckConstraint(
            "block_type IN ('ROOT', 'CONDITION_IF', 'CONDITION_ELSE', 'ACTION')",
            name="ck_strategy_blocks_block_type",
        ),
        sa.CheckConstraint('"order" >= 0', name="ck_strategy_blocks_order_non_negative"),
        sa.CheckConstraint(
            "(block_type = 'ROOT' AND parent_id IS NULL) OR "
            "(block_type != 'ROOT' AND parent_id IS NOT NULL)",
            name="ck_strategy_blocks_root_parent",
        ),
        sa.CheckConstraint(
            "condition_id IS NULL OR block_type IN ('CONDITION_IF', 'CONDITION_ELSE')",
            name="ck_strategy_blocks_condition_kind",
        ),
        sa.CheckConstraint(
            "action_id IS NULL OR block_type = 'ACTION'",
            name="ck_strategy_blocks_action_kind",
        ),
    )
    op.create_index("ix_strategy_blocks_strategy_id", "strategy_blocks", ["strategy_id"])
    op.create_index("ix_strategy_blocks_parent_id", "strategy_blocks", ["parent_id"])


def downgrade() -> None:
    op.drop_index("ix_strategy_blocks_parent_id", table_name="strategy_blocks")
    op.drop_index("ix_strategy_blocks_strategy_id", table_name="strategy_blocks")
    op.drop_table("strategy_blocks")
    op.drop_table("actions")
    op.drop_table("conditions")
    op.drop_index("ix_strategies_owner_id", table_name="strategies")
    op.drop_table("strategies")
