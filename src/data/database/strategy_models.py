"""SQLAlchemy ORM models for block-based trading strategies.

Defines:
- Strategy: User-owned strategy; anchors one block tree via root_block_id.
- StrategyBlock: Typed tree node (ROOT, CONDITION_IF, CONDITION_ELSE, ACTION).
- Condition: Indicator comparison owned by exactly one condition block.
- Action: Effect owned by exactly one ACTION block.

The block tree is stored as flat rows with parent pointers. No ORM
relationships are declared between blocks; trees are rebuilt by
src.strategy_tree.materializer from a single flat query.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.data.database.models import Base, JSONType

BLOCK_TYPES = ("ROOT", "CONDITION_IF", "CONDITION_ELSE", "ACTION")


class Strategy(Base):
    """User-defined block strategy.

    root_block_id is null only between strategy insertion and root
    creation. It is deliberately not a foreign key: strategy_blocks
    already references strategies, and the mutation layer checks the
    reverse link.
    """

    __tablename__ = "strategies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    root_block_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_strategies_owner_id", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<Strategy(id={self.id}, name='{self.name}', owner_id='{self.owner_id}')>"


class Condition(Base):
    """Indicator evaluation rule.

    Compares an indicator reading against either target_value or a second
    indicator stored as another Condition row (target_condition_id). The
    target row is owned by the referencing condition.
    """

    __tablename__ = "conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    indicator_type: Mapped[str] = mapped_column(String(50), nullable=False)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    interval: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    data_source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    data_key: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    parameters: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    operator: Mapped[str] = mapped_column(String(30), nullable=False)
    target_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    target_condition_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("conditions.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Condition(id={self.id}, {self.indicator_type} {self.symbol} "
            f"{self.operator} {self.target_value})>"
        )


class Action(Base):
    """Effect performed when the enclosing branch is taken.

    order is kept for display compatibility only; execution order comes
    from the owning block's order among its siblings.
    """

    __tablename__ = "actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    parameters: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Action(id={self.id}, type='{self.action_type}')>"


class StrategyBlock(Base):
    """Node of a strategy's block tree."""

    __tablename__ = "strategy_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    strategy_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("strategies.id", ondelete="CASCADE"),
        nullable=False,
    )
    block_type: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("strategy_blocks.id", ondelete="CASCADE"),
        nullable=True,
    )
    condition_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("conditions.id"),
        nullable=True,
        unique=True,
    )
    action_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("actions.id"),
        nullable=True,
        unique=True,
    )
    parameters: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("parent_id", "order", name="uq_strategy_blocks_parent_order"),
        CheckConstraint(
            "block_type IN ('ROOT', 'CONDITION_IF', 'CONDITION_ELSE', 'ACTION')",
            name="ck_strategy_blocks_block_type",
        ),
        CheckConstraint('"order" >= 0', name="ck_strategy_blocks_order_non_negative"),
        CheckConstraint(
            "(block_type = 'ROOT' AND parent_id IS NULL) OR "
            "(block_type != 'ROOT' AND parent_id IS NOT NULL)",
            name="ck_strategy_blocks_root_parent",
        ),
        CheckConstraint(
            "condition_id IS NULL OR block_type IN ('CONDITION_IF', 'CONDITION_ELSE')",
            name="ck_strategy_blocks_condition_kind",
        ),
        CheckConstraint(
            "action_id IS NULL OR block_type = 'ACTION'",
            name="ck_strategy_blocks_action_kind",
        ),
        Index("ix_strategy_blocks_strategy_id", "strategy_id"),
        Index("ix_strategy_blocks_parent_id", "parent_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<StrategyBlock(id={self.id}, type='{self.block_type}', "
            f"parent_id={self.parent_id}, order={self.order})>"
        )
