"""Tree mutation API for block strategies.

StrategyTreeService is the single entry point for reading and editing
strategy trees. Every mutation:

1. takes the per-strategy lock (StrategyLockRegistry),
2. opens its own session/transaction and row-locks the strategy,
3. revalidates parent and sibling state from storage,
4. writes the block and its owned leaf fact together,
5. re-materializes the tree inside the same transaction, so a write
   that would leave a corrupt tree is rolled back instead of committed.

Clients are never assumed to hold a consistent copy of the tree.
"""

import logging
from collections import defaultdict
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Callable, ContextManager, Generator, Mapping, Optional, Union

from pydantic import ValidationError
from pydantic.alias_generators import to_snake
from sqlalchemy.orm import Session

from config.settings import StrategyTreeConfig, get_settings
from src.data.database.strategy_models import Action, Condition, Strategy, StrategyBlock
from src.data.database.strategy_repository import StrategyRepository
from src.strategy_tree.errors import (
    AlreadyInitializedError,
    CorruptTreeError,
    CycleRejectedError,
    ImmutableFieldError,
    InvalidPayloadError,
    NotFoundError,
    ParentNotFoundError,
    RootDeletionForbiddenError,
)
from src.strategy_tree.locks import StrategyLockRegistry
from src.strategy_tree.materializer import indicator_requirements, iter_blocks, nest
from src.strategy_tree.transfer import export_document, parse_document
from src.strategy_tree.types import (
    ActionLeaf,
    ActionPayload,
    BlockNode,
    BlockRow,
    BlockType,
    ConditionLeaf,
    ConditionPayload,
    DeleteResult,
    IndicatorRequirement,
    LeafPayload,
    Operator,
    StrategySummary,
    StrategyTree,
)
from src.utils.logging import get_tree_logger

logger = logging.getLogger(__name__)
tree_logger = get_tree_logger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

LOCKED_BLOCK_FIELDS = ("id", "strategy_id", "block_type", "parent_id", "condition_id", "action_id")
PATCHABLE_BLOCK_FIELDS = ("parameters", "order", "condition", "action")
LOCKED_STRATEGY_FIELDS = ("id", "owner_id", "root_block_id")
PATCHABLE_STRATEGY_FIELDS = ("name", "description", "is_active")

# Request spellings used by the UI for leaf patches
_PATCH_KEY_ALIASES = {
    "condition_details": "condition",
    "action_details": "action",
}


def _normalize_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    """camelCase -> snake_case, plus UI aliases."""
    normalized = {}
    for key, value in data.items():
        snake = to_snake(key)
        normalized[_PATCH_KEY_ALIASES.get(snake, snake)] = value
    return normalized


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _parse_block_type(block_type: Union[BlockType, str]) -> BlockType:
    try:
        return BlockType(_enum_value(block_type))
    except ValueError:
        raise InvalidPayloadError(
            f"Unknown block type {block_type!r}",
            field="block_type",
            allowed=[t.value for t in BlockType],
        ) from None


def _validation_error(message: str, error: ValidationError, field: str) -> InvalidPayloadError:
    return InvalidPayloadError(
        message,
        field=field,
        errors=error.errors(include_url=False, include_context=False),
    )


def _validate_order(order: Any) -> int:
    if isinstance(order, bool) or not isinstance(order, int) or order < 0:
        raise InvalidPayloadError("order must be a non-negative integer", field="order", value=order)
    return order


def _validate_parameters(parameters: Any) -> dict:
    if parameters is None:
        return {}
    if not isinstance(parameters, Mapping):
        raise InvalidPayloadError("parameters must be an object", field="parameters")
    return dict(parameters)


def validate_leaf_payload(block_type: BlockType, payload: Any) -> Optional[LeafPayload]:
    """Check that payload is present and well-formed for block_type.

    Returns:
        A ConditionPayload, an ActionPayload, or None for kinds without a leaf

    Raises:
        InvalidPayloadError: missing payload, wrong kind, or schema errors
    """
    if block_type is BlockType.ROOT:
        raise InvalidPayloadError(
            "ROOT blocks are created with their strategy", field="block_type",
        )

    if block_type.needs_condition:
        if payload is None:
            raise InvalidPayloadError(
                f"{block_type.value} block requires a condition payload", field="condition",
            )
        if isinstance(payload, ActionPayload):
            raise InvalidPayloadError(
                f"{block_type.value} block cannot hold an action payload", field="condition",
            )
        if isinstance(payload, ConditionPayload):
            return payload
        try:
            return ConditionPayload.model_validate(payload)
        except ValidationError as e:
            raise _validation_error("Invalid condition payload", e, "condition") from e

    if payload is None:
        raise InvalidPayloadError("ACTION block requires an action payload", field="action")
    if isinstance(payload, ConditionPayload):
        raise InvalidPayloadError("ACTION block cannot hold a condition payload", field="action")
    if isinstance(payload, ActionPayload):
        return payload
    try:
        return ActionPayload.model_validate(payload)
    except ValidationError as e:
        raise _validation_error("Invalid action payload", e, "action") from e


def _condition_columns(payload: ConditionPayload) -> dict[str, Any]:
    return {
        "indicator_type": payload.indicator_type,
        "symbol": payload.symbol,
        "interval": payload.interval,
        "data_source": payload.data_source,
        "data_key": payload.data_key,
        "parameters": dict(payload.parameters),
        "operator": payload.operator.value,
        "target_value": payload.target_value,
    }


def _target_columns(payload: ConditionPayload) -> dict[str, Any]:
    operand = payload.target_indicator
    return {
        "indicator_type": operand.indicator_type,
        "symbol": operand.symbol,
        "interval": operand.interval,
        "data_source": operand.data_source,
        "data_key": operand.data_key,
        "parameters": dict(operand.parameters),
        # Target rows only describe a series; the comparison lives on the primary
        "operator": Operator.EQUALS.value,
        "target_value": None,
    }


def _action_columns(payload: ActionPayload) -> dict[str, Any]:
    return {
        "action_type": payload.action_type.value,
        "parameters": dict(payload.parameters),
        "order": payload.order,
    }


def _condition_leaf(row: Condition, target: Optional[Condition]) -> ConditionLeaf:
    data = {
        "indicator_type": row.indicator_type,
        "symbol": row.symbol,
        "interval": row.interval,
        "data_source": row.data_source,
        "data_key": row.data_key,
        "parameters": row.parameters or {},
        "operator": row.operator,
        "target_value": row.target_value,
    }
    if target is not None:
        data["target_indicator"] = {
            "indicator_type": target.indicator_type,
            "symbol": target.symbol,
            "interval": target.interval,
            "data_source": target.data_source,
            "data_key": target.data_key,
            "parameters": target.parameters or {},
        }
    try:
        payload = ConditionPayload.model_validate(data)
    except ValidationError as e:
        raise CorruptTreeError(
            "Corrupt strategy tree: stored condition is invalid",
            reason="stored condition is invalid",
            condition_id=row.id,
        ) from e
    return ConditionLeaf(id=row.id, payload=payload, target_condition_id=row.target_condition_id)


def _action_leaf(row: Action) -> ActionLeaf:
    try:
        payload = ActionPayload.model_validate({
            "action_type": row.action_type,
            "parameters": row.parameters or {},
            "order": row.order,
        })
    except ValidationError as e:
        raise CorruptTreeError(
            "Corrupt strategy tree: stored action is invalid",
            reason="stored action is invalid",
            action_id=row.id,
        ) from e
    return ActionLeaf(id=row.id, payload=payload)


@lru_cache
def get_lock_registry() -> StrategyLockRegistry:
    """Process-wide lock registry shared by every service instance."""
    return StrategyLockRegistry(timeout=get_settings().strategy_tree.lock_timeout_seconds)


class StrategyTreeService:
    """Create, read, mutate and transfer strategy block trees.

    Args:
        session_factory: Callable returning a context manager that yields a
            Session and commits on success / rolls back on error, such as
            DatabaseManager.get_session
        locks: Per-strategy lock registry (process-wide default)
        config: Tree settings (defaults to get_settings().strategy_tree)
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        locks: Optional[StrategyLockRegistry] = None,
        config: Optional[StrategyTreeConfig] = None,
    ):
        self._session_factory = session_factory
        self._config = config or get_settings().strategy_tree
        self._locks = locks or get_lock_registry()

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Generator[StrategyRepository, None, None]:
        with self._session_factory() as session:
            yield StrategyRepository(session)

    @staticmethod
    @contextmanager
    def _reporting_corruption(strategy_id: int) -> Generator[None, None, None]:
        """Log a CorruptTreeError raised inside the block, then re-raise it."""
        try:
            yield
        except CorruptTreeError as e:
            context = dict(e.detail)
            reason = context.pop("reason", e.message)
            context.pop("strategy_id", None)
            tree_logger.corrupt_tree(strategy_id, reason, **context)
            raise

    @contextmanager
    def _mutation(self, strategy_id: int) -> Generator[tuple[StrategyRepository, Strategy], None, None]:
        """Lock a strategy and open one transaction for a mutation."""
        with self._locks.hold(strategy_id), self._reporting_corruption(strategy_id):
            with self._session_factory() as session:
                repo = StrategyRepository(session)
                strategy = repo.get_strategy(strategy_id, for_update=True)
                if strategy is None:
                    raise NotFoundError(f"Strategy {strategy_id} not found", strategy_id=strategy_id)
                yield repo, strategy

    def _load_tree(self, repo: StrategyRepository, strategy: Strategy) -> StrategyTree:
        """Read all rows of a strategy and nest them."""
        blocks = repo.get_blocks(strategy.id)
        condition_rows = repo.get_conditions(b.condition_id for b in blocks if b.condition_id is not None)
        target_rows = repo.get_conditions(
            c.target_condition_id for c in condition_rows.values() if c.target_condition_id is not None
        )
        action_rows = repo.get_actions(b.action_id for b in blocks if b.action_id is not None)

        conditions = {}
        for condition_id, row in condition_rows.items():
            target = None
            if row.target_condition_id is not None:
                target = target_rows.get(row.target_condition_id)
                if target is None:
                    raise CorruptTreeError(
                        "Corrupt strategy tree: target condition row missing",
                        reason="target condition row missing",
                        condition_id=condition_id,
                        target_condition_id=row.target_condition_id,
                    )
            conditions[condition_id] = _condition_leaf(row, target)
        actions = {action_id: _action_leaf(row) for action_id, row in action_rows.items()}

        return nest(strategy, [BlockRow.from_model(b) for b in blocks], conditions, actions)

    def _node(self, repo: StrategyRepository, strategy: Strategy, block_id: int) -> BlockNode:
        tree = self._load_tree(repo, strategy)
        node = tree.find(block_id)
        if node is None:
            raise CorruptTreeError(
                "Corrupt strategy tree: written block not reachable",
                reason="written block not reachable",
                block_id=block_id,
            )
        return node

    def _depth_of(self, parent_map: Mapping[int, Optional[int]], block_id: int) -> int:
        """Number of edges between block_id and the root."""
        depth = 0
        current = parent_map.get(block_id)
        while current is not None:
            depth += 1
            if depth > len(parent_map):
                raise CorruptTreeError(
                    "Corrupt strategy tree: cycle detected",
                    reason="cycle detected",
                    block_id=block_id,
                )
            current = parent_map.get(current)
        return depth

    def _check_depth(self, depth: int, block_id: Optional[int] = None) -> None:
        if depth > self._config.max_depth:
            raise InvalidPayloadError(
                f"Block depth {depth} exceeds the maximum of {self._config.max_depth}",
                field="parent_id",
                block_id=block_id,
            )

    def _claim_order(
        self,
        repo: StrategyRepository,
        parent_id: int,
        order: Optional[int],
        moving: Optional[StrategyBlock] = None,
    ) -> int:
        """Pick the sibling order for a block placed under parent_id.

        Without an explicit order the block goes last. An explicit order
        that is already taken pushes that sibling and every later one up
        by one.
        """
        if order is None:
            current = repo.max_sibling_order(parent_id)
            return 0 if current is None else current + 1

        order = _validate_order(order)
        exclude_id = moving.id if moving is not None else None
        if repo.order_taken(parent_id, order, exclude_id=exclude_id):
            if moving is not None and moving.parent_id == parent_id:
                # Park the moving block past the end so shifting cannot collide with it
                current = repo.max_sibling_order(parent_id) or 0
                repo.update_block(moving, order=current + 2)
            repo.shift_siblings(parent_id, order, exclude_id=exclude_id)
        return order

    def _get_parent(self, repo: StrategyRepository, strategy: Strategy, parent_id: Any) -> StrategyBlock:
        parent = repo.get_block(parent_id, strategy_id=strategy.id) if parent_id is not None else None
        if parent is None:
            raise ParentNotFoundError(
                f"Parent block {parent_id} not found in strategy {strategy.id}",
                strategy_id=strategy.id,
                parent_id=parent_id,
            )
        return parent

    def _get_block(self, repo: StrategyRepository, strategy: Strategy, block_id: int) -> StrategyBlock:
        block = repo.get_block(block_id, strategy_id=strategy.id)
        if block is None:
            raise NotFoundError(
                f"Block {block_id} not found in strategy {strategy.id}",
                strategy_id=strategy.id,
                block_id=block_id,
            )
        return block

    def _insert_leaf(self, repo: StrategyRepository, payload: LeafPayload) -> tuple[Optional[int], Optional[int]]:
        """Insert a leaf fact; return (condition_id, action_id)."""
        if isinstance(payload, ConditionPayload):
            target_id = None
            if payload.target_indicator is not None:
                target_id = repo.create_condition(**_target_columns(payload)).id
            condition = repo.create_condition(target_condition_id=target_id, **_condition_columns(payload))
            return condition.id, None
        action = repo.create_action(**_action_columns(payload))
        return None, action.id

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def create_strategy(
        self,
        owner_id: str,
        name: str,
        description: Optional[str] = None,
        is_active: bool = False,
        initialize_root: bool = True,
    ) -> StrategyTree:
        """Create a strategy and, by default, its ROOT block in one transaction."""
        name = (name or "").strip()
        if not name:
            raise InvalidPayloadError("Strategy name is required", field="name")
        if not owner_id:
            raise InvalidPayloadError("Strategy owner is required", field="owner_id")

        with self._session_factory() as session:
            repo = StrategyRepository(session)
            strategy = repo.create_strategy(owner_id, name, description, is_active=is_active)
            if initialize_root:
                root = repo.create_block(strategy.id, BlockType.ROOT.value, parent_id=None, order=0)
                repo.update_strategy(strategy, root_block_id=root.id)
            with self._reporting_corruption(strategy.id):
                tree = self._load_tree(repo, strategy)

        tree_logger.strategy_created(tree.id, owner_id, tree.root_block_id)
        return tree

    def create_root(self, strategy_id: int) -> BlockNode:
        """Create the ROOT block of a strategy that has none yet.

        Raises:
            NotFoundError: strategy does not exist
            AlreadyInitializedError: a root already exists
        """
        with self._mutation(strategy_id) as (repo, strategy):
            if strategy.root_block_id is not None:
                raise AlreadyInitializedError(
                    f"Strategy {strategy_id} already has root block {strategy.root_block_id}",
                    strategy_id=strategy_id,
                    root_block_id=strategy.root_block_id,
                )
            existing = [b.id for b in repo.get_blocks(strategy_id) if b.parent_id is None]
            if existing:
                raise AlreadyInitializedError(
                    f"Strategy {strategy_id} already has a root block",
                    strategy_id=strategy_id,
                    root_block_id=existing[0],
                )
            root = repo.create_block(strategy_id, BlockType.ROOT.value, parent_id=None, order=0)
            repo.update_strategy(strategy, root_block_id=root.id)
            node = self._node(repo, strategy, root.id)

        logger.info("Initialized root block %s for strategy %s", node.id, strategy_id)
        return node

    def get_strategy(self, strategy_id: int) -> StrategyTree:
        """Load a strategy with its nested block tree.

        Raises:
            NotFoundError: strategy does not exist
            CorruptTreeError: persisted rows violate a tree invariant
        """
        with self._read() as repo:
            strategy = repo.get_strategy(strategy_id)
            if strategy is None:
                raise NotFoundError(f"Strategy {strategy_id} not found", strategy_id=strategy_id)
            with self._reporting_corruption(strategy_id):
                return self._load_tree(repo, strategy)

    def list_strategies(self, owner_id: str, active_only: bool = False) -> list[StrategySummary]:
        with self._read() as repo:
            strategies = repo.list_strategies(owner_id, active_only=active_only)
            summaries = [StrategySummary.from_model(s) for s in strategies]
        logger.debug("Listed %d strategies for owner_id=%s", len(summaries), owner_id)
        return summaries

    def update_strategy(self, strategy_id: int, patch: Mapping[str, Any]) -> StrategyTree:
        """Update name, description or is_active of a strategy."""
        patch = _normalize_keys(patch)
        with self._mutation(strategy_id) as (repo, strategy):
            for key in LOCKED_STRATEGY_FIELDS:
                if key in patch and patch[key] != getattr(strategy, key):
                    raise ImmutableFieldError(
                        f"Strategy field '{key}' cannot be changed",
                        strategy_id=strategy_id,
                        field=key,
                    )
            unknown = sorted(set(patch) - set(PATCHABLE_STRATEGY_FIELDS) - set(LOCKED_STRATEGY_FIELDS))
            if unknown:
                raise InvalidPayloadError(f"Unknown strategy fields: {unknown}", fields=unknown)

            updates = {k: patch[k] for k in PATCHABLE_STRATEGY_FIELDS if k in patch}
            if "name" in updates:
                name = updates["name"].strip() if isinstance(updates["name"], str) else ""
                if not name:
                    raise InvalidPayloadError("Strategy name is required", field="name")
                updates["name"] = name
            if "is_active" in updates and not isinstance(updates["is_active"], bool):
                raise InvalidPayloadError("is_active must be a boolean", field="is_active")
            if "description" in updates and updates["description"] is not None \
                    and not isinstance(updates["description"], str):
                raise InvalidPayloadError("description must be a string", field="description")

            if updates:
                repo.update_strategy(strategy, **updates)
            tree = self._load_tree(repo, strategy)

        logger.info("Updated strategy id=%s fields=%s", strategy_id, sorted(updates))
        return tree

    def delete_strategy(self, strategy_id: int) -> DeleteResult:
        """Delete a strategy with every block and leaf fact it owns."""
        with self._mutation(strategy_id) as (repo, strategy):
            blocks = repo.get_blocks(strategy_id)
            result = self._delete_subtree(repo, blocks, root_id=strategy.root_block_id)
            repo.delete_strategy(strategy)

        tree_logger.strategy_deleted(strategy_id, len(result.deleted_ids))
        return result

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    def add_block(
        self,
        strategy_id: int,
        parent_id: int,
        block_type: Union[BlockType, str],
        payload: Any = None,
        order: Optional[int] = None,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> BlockNode:
        """Create a block and its leaf fact under an existing parent.

        Args:
            strategy_id: Strategy the parent belongs to
            parent_id: Existing parent block
            block_type: CONDITION_IF, CONDITION_ELSE or ACTION
            payload: Condition payload for condition blocks, action payload
                for ACTION blocks (model instance or dict)
            order: Sibling order; last position when omitted
            parameters: Opaque block parameters (renderer hints)

        Returns:
            The created block with its leaf

        Raises:
            NotFoundError: strategy missing or without root
            ParentNotFoundError: parent missing or in another strategy
            InvalidPayloadError: bad kind, payload, order, parent kind or depth
        """
        block_type = _parse_block_type(block_type)
        leaf_payload = validate_leaf_payload(block_type, payload)
        parameters = _validate_parameters(parameters)
        if order is not None:
            _validate_order(order)

        with self._mutation(strategy_id) as (repo, strategy):
            if strategy.root_block_id is None:
                raise NotFoundError(
                    f"Strategy {strategy_id} has no root block", strategy_id=strategy_id,
                )
            parent = self._get_parent(repo, strategy, parent_id)
            if not BlockType(parent.block_type).can_have_children:
                raise InvalidPayloadError(
                    f"{parent.block_type} block {parent.id} cannot have children",
                    field="parent_id",
                    parent_id=parent.id,
                )
            self._check_depth(self._depth_of(repo.get_parent_map(strategy_id), parent.id) + 1)

            assigned = self._claim_order(repo, parent.id, order)
            condition_id, action_id = self._insert_leaf(repo, leaf_payload)
            block = repo.create_block(
                strategy_id,
                block_type.value,
                parent_id=parent.id,
                order=assigned,
                parameters=parameters,
                condition_id=condition_id,
                action_id=action_id,
            )
            node = self._node(repo, strategy, block.id)

        tree_logger.block_added(strategy_id, node.id, parent_id, block_type.value, node.order)
        return node

    # Alias matching the external contract name
    create_block = add_block

    def update_block(self, strategy_id: int, block_id: int, patch: Mapping[str, Any]) -> BlockNode:
        """Patch a block's parameters, order, or owned leaf fields.

        Raises:
            NotFoundError: block missing
            ImmutableFieldError: patch changes block_type, parent_id or leaf identity
            InvalidPayloadError: unknown keys, leaf patch of the wrong kind,
                or a merged leaf that fails validation
        """
        if not isinstance(patch, Mapping):
            raise InvalidPayloadError("patch must be an object", field="patch")
        patch = _normalize_keys(patch)

        with self._mutation(strategy_id) as (repo, strategy):
            block = self._get_block(repo, strategy, block_id)

            for key in LOCKED_BLOCK_FIELDS:
                if key in patch and _enum_value(patch[key]) != getattr(block, key):
                    raise ImmutableFieldError(
                        f"Block field '{key}' cannot be changed; delete and recreate the block",
                        block_id=block_id,
                        field=key,
                    )
            unknown = sorted(set(patch) - set(PATCHABLE_BLOCK_FIELDS) - set(LOCKED_BLOCK_FIELDS))
            if unknown:
                raise InvalidPayloadError(f"Unknown block fields: {unknown}", block_id=block_id, fields=unknown)

            block_type = BlockType(block.block_type)
            changed = []

            if "condition" in patch:
                if not block_type.needs_condition:
                    raise InvalidPayloadError(
                        f"{block_type.value} block has no condition", block_id=block_id, field="condition",
                    )
                self._patch_condition(repo, block, patch["condition"])
                changed.append("condition")

            if "action" in patch:
                if not block_type.needs_action:
                    raise InvalidPayloadError(
                        f"{block_type.value} block has no action", block_id=block_id, field="action",
                    )
                self._patch_action(repo, block, patch["action"])
                changed.append("action")

            if "parameters" in patch:
                repo.update_block(block, parameters=_validate_parameters(patch["parameters"]))
                changed.append("parameters")

            if "order" in patch:
                if block.parent_id is None:
                    raise ImmutableFieldError(
                        "ROOT block order cannot be changed", block_id=block_id, field="order",
                    )
                new_order = _validate_order(patch["order"])
                if new_order != block.order:
                    assigned = self._claim_order(repo, block.parent_id, new_order, moving=block)
                    repo.update_block(block, order=assigned)
                changed.append("order")

            node = self._node(repo, strategy, block.id)

        tree_logger.block_updated(strategy_id, block_id, changed)
        return node

    def _patch_condition(self, repo: StrategyRepository, block: StrategyBlock, changes: Any) -> None:
        if not isinstance(changes, Mapping):
            raise InvalidPayloadError("condition patch must be an object", block_id=block.id, field="condition")
        row = repo.get_condition(block.condition_id)
        if row is None:
            raise CorruptTreeError(
                "Corrupt strategy tree: condition row missing",
                reason="condition row missing",
                block_id=block.id,
                condition_id=block.condition_id,
            )
        target = repo.get_condition(row.target_condition_id) if row.target_condition_id else None
        current = _condition_leaf(row, target).payload.to_record()

        changes = _normalize_keys(changes)
        if "id" in changes and changes["id"] != row.id:
            raise ImmutableFieldError(
                "Condition identity cannot be changed", block_id=block.id, field="condition.id",
            )
        changes.pop("id", None)
        changes.pop("target_condition_id", None)
        # Setting one kind of target clears the other
        if changes.get("target_value") is not None:
            current["target_indicator"] = None
        if changes.get("target_indicator") is not None:
            current["target_value"] = None
        current.update(changes)

        try:
            payload = ConditionPayload.model_validate(current)
        except ValidationError as e:
            raise _validation_error("Invalid condition patch", e, "condition") from e

        if payload.target_indicator is not None:
            if target is not None:
                repo.update_leaf(target, **_target_columns(payload))
            else:
                target = repo.create_condition(**_target_columns(payload))
            repo.update_leaf(row, target_condition_id=target.id, **_condition_columns(payload))
        else:
            repo.update_leaf(row, target_condition_id=None, **_condition_columns(payload))
            if target is not None:
                repo.delete_conditions([target.id])

    def _patch_action(self, repo: StrategyRepository, block: StrategyBlock, changes: Any) -> None:
        if not isinstance(changes, Mapping):
            raise InvalidPayloadError("action patch must be an object", block_id=block.id, field="action")
        row = repo.get_action(block.action_id)
        if row is None:
            raise CorruptTreeError(
                "Corrupt strategy tree: action row missing",
                reason="action row missing",
                block_id=block.id,
                action_id=block.action_id,
            )
        changes = _normalize_keys(changes)
        if "id" in changes and changes["id"] != row.id:
            raise ImmutableFieldError(
                "Action identity cannot be changed", block_id=block.id, field="action.id",
            )
        changes.pop("id", None)

        current = _action_leaf(row).payload.to_record()
        current.update(changes)
        try:
            payload = ActionPayload.model_validate(current)
        except ValidationError as e:
            raise _validation_error("Invalid action patch", e, "action") from e
        repo.update_leaf(row, **_action_columns(payload))

    def delete_block(self, strategy_id: int, block_id: int) -> DeleteResult:
        """Delete a block, its whole subtree, and the leaf facts they own.

        Raises:
            NotFoundError: block missing
            RootDeletionForbiddenError: block is the strategy's ROOT
        """
        with self._mutation(strategy_id) as (repo, strategy):
            block = self._get_block(repo, strategy, block_id)
            if block.block_type == BlockType.ROOT.value or block.id == strategy.root_block_id:
                raise RootDeletionForbiddenError(
                    f"Block {block_id} is the root of strategy {strategy_id}; delete the strategy instead",
                    strategy_id=strategy_id,
                    block_id=block_id,
                )
            result = self._delete_subtree(repo, repo.get_blocks(strategy_id), root_id=block.id)
            self._load_tree(repo, strategy)

        tree_logger.blocks_deleted(strategy_id, result.deleted_ids)
        return result

    def _delete_subtree(
        self,
        repo: StrategyRepository,
        blocks: list[StrategyBlock],
        root_id: Optional[int],
    ) -> DeleteResult:
        """Delete root_id and every descendant among blocks.

        Blocks go children-first, then the conditions and actions they owned.
        """
        if root_id is None:
            return DeleteResult(deleted_ids=[])

        by_id = {b.id: b for b in blocks}
        children = defaultdict(list)
        for b in blocks:
            if b.parent_id is not None:
                children[b.parent_id].append(b)

        preorder: list[StrategyBlock] = []
        stack = [by_id[root_id]] if root_id in by_id else []
        while stack:
            block = stack.pop()
            preorder.append(block)
            stack.extend(sorted(children.get(block.id, ()), key=lambda c: c.order, reverse=True))

        condition_ids = [b.condition_id for b in preorder if b.condition_id is not None]
        action_ids = [b.action_id for b in preorder if b.action_id is not None]

        repo.delete_blocks(reversed(preorder))
        repo.delete_conditions(condition_ids)
        repo.delete_actions(action_ids)

        return DeleteResult(
            deleted_ids=[b.id for b in preorder],
            deleted_condition_ids=condition_ids,
            deleted_action_ids=action_ids,
        )

    def move_block(
        self,
        strategy_id: int,
        block_id: int,
        new_parent_id: int,
        new_order: Optional[int] = None,
    ) -> BlockNode:
        """Re-parent and/or reorder a block (drag-reorder).

        The new parent's ancestors are walked up to the root; finding
        block_id among them means the move would create a cycle.

        Raises:
            NotFoundError: block missing
            ParentNotFoundError: new parent missing or in another strategy
            CycleRejectedError: new parent is the block or one of its descendants
            ImmutableFieldError: block is the ROOT
            InvalidPayloadError: new parent is an ACTION, bad order, or too deep
        """
        if new_order is not None:
            _validate_order(new_order)

        with self._mutation(strategy_id) as (repo, strategy):
            block = self._get_block(repo, strategy, block_id)
            if block.parent_id is None:
                raise ImmutableFieldError(
                    "ROOT block cannot be moved", block_id=block_id, field="parent_id",
                )
            parent = self._get_parent(repo, strategy, new_parent_id)

            parent_map = repo.get_parent_map(strategy_id)
            current: Optional[int] = parent.id
            steps = 0
            while current is not None:
                if current == block.id:
                    raise CycleRejectedError(
                        f"Cannot move block {block_id} under its own subtree (block {new_parent_id})",
                        block_id=block_id,
                        new_parent_id=new_parent_id,
                    )
                current = parent_map.get(current)
                steps += 1
                if steps > len(parent_map):
                    raise CorruptTreeError(
                        "Corrupt strategy tree: cycle detected",
                        reason="cycle detected",
                        block_id=parent.id,
                    )

            if not BlockType(parent.block_type).can_have_children:
                raise InvalidPayloadError(
                    f"{parent.block_type} block {parent.id} cannot have children",
                    field="parent_id",
                    parent_id=parent.id,
                )

            subtree_height = self._subtree_height(parent_map, block.id)
            self._check_depth(self._depth_of(parent_map, parent.id) + 1 + subtree_height, block_id)

            old_parent_id = block.parent_id
            if new_order is None and parent.id == old_parent_id:
                assigned = block.order
            else:
                assigned = self._claim_order(repo, parent.id, new_order, moving=block)
            repo.update_block(block, parent_id=parent.id, order=assigned)
            node = self._node(repo, strategy, block.id)

        tree_logger.block_moved(strategy_id, block_id, old_parent_id, new_parent_id, node.order)
        return node

    @staticmethod
    def _subtree_height(parent_map: Mapping[int, Optional[int]], block_id: int) -> int:
        children = defaultdict(list)
        for child_id, parent_id in parent_map.items():
            if parent_id is not None:
                children[parent_id].append(child_id)
        height = 0
        frontier = [block_id]
        while True:
            frontier = [c for b in frontier for c in children.get(b, ())]
            if not frontier:
                return height
            height += 1
            if height > len(parent_map):
                raise CorruptTreeError(
                    "Corrupt strategy tree: cycle detected",
                    reason="cycle detected",
                    block_id=block_id,
                )

    # -------------------------------------------------------------------------
    # Evaluation support and transfer
    # -------------------------------------------------------------------------

    def get_indicator_requirements(self, strategy_id: int) -> list[IndicatorRequirement]:
        """Distinct indicator series the strategy's conditions read."""
        return indicator_requirements(self.get_strategy(strategy_id))

    def list_active_strategy_ids(self) -> list[int]:
        with self._read() as repo:
            return repo.list_active_strategy_ids()

    def export_strategy(self, strategy_id: int) -> dict[str, Any]:
        """Export a strategy as a portable JSON-ready document."""
        tree = self.get_strategy(strategy_id)
        document = export_document(tree, self._config.export_format_version)
        logger.info("Exported strategy %s (%d blocks)", strategy_id, len(document["blocks"]))
        return document

    def import_strategy(self, owner_id: str, document: Any, name: Optional[str] = None) -> StrategyTree:
        """Create a new strategy from an exported document.

        Blocks are inserted parent-first in flattened order under fresh ids;
        sibling order values are kept as exported.
        """
        if not owner_id:
            raise InvalidPayloadError("Strategy owner is required", field="owner_id")
        parsed, root = parse_document(document, self._config.export_format_version)
        name = (name or parsed.name).strip()
        if not name:
            raise InvalidPayloadError("Strategy name is required", field="name")

        ordered = list(iter_blocks(root))
        for node, _, depth in ordered:
            self._check_depth(depth, node.id)

        with self._session_factory() as session:
            repo = StrategyRepository(session)
            strategy = repo.create_strategy(owner_id, name, parsed.description, is_active=parsed.is_active)

            new_ids: dict[int, int] = {}
            for node, parent_ref, _ in ordered:
                condition_id = action_id = None
                if node.leaf is not None:
                    condition_id, action_id = self._insert_leaf(repo, node.leaf.payload)
                block = repo.create_block(
                    strategy.id,
                    node.block_type.value,
                    parent_id=new_ids[parent_ref] if parent_ref is not None else None,
                    order=node.order,
                    parameters=dict(node.parameters),
                    condition_id=condition_id,
                    action_id=action_id,
                )
                new_ids[node.id] = block.id
                if node.block_type is BlockType.ROOT:
                    repo.update_strategy(strategy, root_block_id=block.id)

            with self._reporting_corruption(strategy.id):
                tree = self._load_tree(repo, strategy)

        tree_logger.strategy_created(tree.id, owner_id, tree.root_block_id, imported_blocks=len(new_ids))
        return tree
