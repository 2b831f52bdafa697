"""Repository for block strategy data access.

Centralizes all queries against strategies, strategy_blocks, conditions
and actions. The repository performs no validation; structural rules
live in src.strategy_tree.service, which calls these methods inside one
session per operation.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.data.database.strategy_models import (
    Action,
    Condition,
    Strategy,
    StrategyBlock,
)

logger = logging.getLogger(__name__)


class StrategyRepository:
    """Repository for strategy tree persistence.

    Follows the same session-based pattern as the other repositories:
    the caller owns the session and its transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def get_strategy(self, strategy_id: int, for_update: bool = False) -> Optional[Strategy]:
        """Get a strategy by ID.

        Args:
            strategy_id: Strategy ID
            for_update: Take a row lock (SELECT ... FOR UPDATE) for the
                rest of the transaction. Ignored by SQLite.
        """
        query = self.session.query(Strategy).filter(Strategy.id == strategy_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def list_strategies(self, owner_id: str, active_only: bool = False) -> list[Strategy]:
        """List strategies for an owner, newest first."""
        query = self.session.query(Strategy).filter(Strategy.owner_id == owner_id)
        if active_only:
            query = query.filter(Strategy.is_active.is_(True))
        return query.order_by(Strategy.created_at.desc(), Strategy.id.desc()).all()

    def list_active_strategy_ids(self) -> list[int]:
        """IDs of all active strategies across owners."""
        rows = (
            self.session.query(Strategy.id)
            .filter(Strategy.is_active.is_(True))
            .order_by(Strategy.id)
            .all()
        )
        return [row[0] for row in rows]

    def create_strategy(
        self,
        owner_id: str,
        name: str,
        description: Optional[str] = None,
        is_active: bool = False,
    ) -> Strategy:
        """Insert a strategy without a root block."""
        strategy = Strategy(
            owner_id=owner_id,
            name=name,
            description=description,
            is_active=is_active,
        )
        self.session.add(strategy)
        self.session.flush()
        logger.debug("Inserted strategy id=%s owner_id=%s", strategy.id, owner_id)
        return strategy

    def update_strategy(self, strategy: Strategy, **fields) -> Strategy:
        """Apply already-validated field updates to a strategy."""
        for key, value in fields.items():
            setattr(strategy, key, value)
        self.session.flush()
        return strategy

    def delete_strategy(self, strategy: Strategy) -> None:
        self.session.delete(strategy)
        self.session.flush()

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    def get_block(self, block_id: int, strategy_id: Optional[int] = None) -> Optional[StrategyBlock]:
        """Get a block by ID, optionally scoped to a strategy."""
        query = self.session.query(StrategyBlock).filter(StrategyBlock.id == block_id)
        if strategy_id is not None:
            query = query.filter(StrategyBlock.strategy_id == strategy_id)
        return query.first()

    def get_blocks(self, strategy_id: int) -> list[StrategyBlock]:
        """All blocks of a strategy as a flat list, ordered by parent then order."""
        return (
            self.session.query(StrategyBlock)
            .filter(StrategyBlock.strategy_id == strategy_id)
            .order_by(StrategyBlock.parent_id, StrategyBlock.order, StrategyBlock.id)
            .all()
        )

    def get_parent_map(self, strategy_id: int) -> dict[int, Optional[int]]:
        """Map every block id of a strategy to its parent id in one query."""
        rows = (
            self.session.query(StrategyBlock.id, StrategyBlock.parent_id)
            .filter(StrategyBlock.strategy_id == strategy_id)
            .all()
        )
        return {block_id: parent_id for block_id, parent_id in rows}

    def max_sibling_order(self, parent_id: int) -> Optional[int]:
        """Highest order among the children of parent_id, or None without children."""
        return (
            self.session.query(func.max(StrategyBlock.order))
            .filter(StrategyBlock.parent_id == parent_id)
            .scalar()
        )

    def order_taken(self, parent_id: int, order: int, exclude_id: Optional[int] = None) -> bool:
        query = self.session.query(StrategyBlock.id).filter(
            StrategyBlock.parent_id == parent_id,
            StrategyBlock.order == order,
        )
        if exclude_id is not None:
            query = query.filter(StrategyBlock.id != exclude_id)
        return query.first() is not None

    def shift_siblings(self, parent_id: int, from_order: int, exclude_id: Optional[int] = None) -> int:
        """Increment the order of siblings at or after from_order.

        Rows are moved highest first and flushed one by one so the
        (parent_id, order) unique constraint holds after every statement.

        Returns:
            Number of blocks shifted
        """
        query = self.session.query(StrategyBlock).filter(
            StrategyBlock.parent_id == parent_id,
            StrategyBlock.order >= from_order,
        )
        if exclude_id is not None:
            query = query.filter(StrategyBlock.id != exclude_id)
        siblings = query.order_by(StrategyBlock.order.desc()).all()
        for sibling in siblings:
            sibling.order += 1
            self.session.flush()
        return len(siblings)

    def create_block(
        self,
        strategy_id: int,
        block_type: str,
        parent_id: Optional[int],
        order: int,
        parameters: Optional[dict] = None,
        condition_id: Optional[int] = None,
        action_id: Optional[int] = None,
    ) -> StrategyBlock:
        block = StrategyBlock(
            strategy_id=strategy_id,
            block_type=block_type,
            parent_id=parent_id,
            order=order,
            parameters=parameters or {},
            condition_id=condition_id,
            action_id=action_id,
        )
        self.session.add(block)
        self.session.flush()
        return block

    def update_block(self, block: StrategyBlock, **fields) -> StrategyBlock:
        for key, value in fields.items():
            setattr(block, key, value)
        self.session.flush()
        return block

    def delete_blocks(self, blocks: Iterable[StrategyBlock]) -> None:
        """Delete blocks in the given order (children must come before parents)."""
        for block in blocks:
            self.session.delete(block)
            self.session.flush()

    # -------------------------------------------------------------------------
    # Leaf facts
    # -------------------------------------------------------------------------

    def create_condition(self, **fields) -> Condition:
        condition = Condition(**fields)
        self.session.add(condition)
        self.session.flush()
        return condition

    def create_action(self, **fields) -> Action:
        action = Action(**fields)
        self.session.add(action)
        self.session.flush()
        return action

    def get_condition(self, condition_id: int) -> Optional[Condition]:
        return self.session.query(Condition).filter(Condition.id == condition_id).first()

    def get_action(self, action_id: int) -> Optional[Action]:
        return self.session.query(Action).filter(Action.id == action_id).first()

    def get_conditions(self, condition_ids: Iterable[int]) -> dict[int, Condition]:
        """Fetch conditions by ID, keyed by ID."""
        ids = list(condition_ids)
        if not ids:
            return {}
        rows = self.session.query(Condition).filter(Condition.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def get_actions(self, action_ids: Iterable[int]) -> dict[int, Action]:
        """Fetch actions by ID, keyed by ID."""
        ids = list(action_ids)
        if not ids:
            return {}
        rows = self.session.query(Action).filter(Action.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def update_leaf(self, leaf: Condition | Action, **fields) -> Condition | Action:
        for key, value in fields.items():
            setattr(leaf, key, value)
        self.session.flush()
        return leaf

    def delete_conditions(self, condition_ids: Iterable[int]) -> int:
        """Delete conditions and the target-indicator conditions they own."""
        conditions = list(self.get_conditions(condition_ids).values())
        target_ids = [c.target_condition_id for c in conditions if c.target_condition_id is not None]
        for condition in conditions:
            self.session.delete(condition)
        self.session.flush()
        targets = list(self.get_conditions(target_ids).values())
        for target in targets:
            self.session.delete(target)
        self.session.flush()
        return len(conditions) + len(targets)

    def delete_actions(self, action_ids: Iterable[int]) -> int:
        actions = list(self.get_actions(action_ids).values())
        for action in actions:
            self.session.delete(action)
        self.session.flush()
        return len(actions)
