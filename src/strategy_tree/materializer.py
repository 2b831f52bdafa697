"""Tree materializer: flat block rows <-> nested block tree.

nest() indexes rows by parent id in a single pass and attaches each
group, sorted by ascending order, below its parent starting from the
ROOT. flatten() is the inverse, emitting rows depth-first by sibling
order. Both are pure and iterative, so tree depth is not bounded by
the interpreter's recursion limit.

Round-trip law: ``flatten(nest(rows))`` equals ``rows`` up to row
ordering, and ``nest(flatten(tree))`` equals ``tree``.
"""

import json
from collections import defaultdict
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

from src.strategy_tree.errors import CorruptTreeError
from src.strategy_tree.types import (
    ActionLeaf,
    BlockNode,
    BlockRow,
    BlockType,
    ConditionLeaf,
    IndicatorOperand,
    IndicatorRequirement,
    StrategyTree,
)


def _corrupt(reason: str, **detail: Any) -> CorruptTreeError:
    return CorruptTreeError(f"Corrupt strategy tree: {reason}", reason=reason, **detail)


def _resolve_leaf(
    row: BlockRow,
    conditions: Mapping[int, ConditionLeaf],
    actions: Mapping[int, ActionLeaf],
) -> Optional[Union[ConditionLeaf, ActionLeaf]]:
    """Return the leaf a row references, checking it matches the block kind."""
    if row.block_type.needs_condition:
        if row.action_id is not None:
            raise _corrupt("condition block references an action", block_id=row.id)
        if row.condition_id is None:
            raise _corrupt("condition block has no condition", block_id=row.id)
        leaf = conditions.get(row.condition_id)
        if leaf is None:
            raise _corrupt("condition row missing", block_id=row.id, condition_id=row.condition_id)
        return leaf

    if row.block_type.needs_action:
        if row.condition_id is not None:
            raise _corrupt("action block references a condition", block_id=row.id)
        if row.action_id is None:
            raise _corrupt("action block has no action", block_id=row.id)
        leaf = actions.get(row.action_id)
        if leaf is None:
            raise _corrupt("action row missing", block_id=row.id, action_id=row.action_id)
        return leaf

    if row.condition_id is not None or row.action_id is not None:
        raise _corrupt("root block references a leaf", block_id=row.id)
    return None


def _find_cycle(start: int, by_id: Mapping[int, BlockRow]) -> Optional[list[int]]:
    """Walk parent pointers from start; return the cycle if one is entered."""
    path: list[int] = []
    seen: dict[int, int] = {}
    current: Optional[int] = start
    while current is not None and current in by_id:
        if current in seen:
            return path[seen[current]:]
        seen[current] = len(path)
        path.append(current)
        current = by_id[current].parent_id
    return None


def nest_blocks(
    rows: Iterable[BlockRow],
    conditions: Optional[Mapping[int, ConditionLeaf]] = None,
    actions: Optional[Mapping[int, ActionLeaf]] = None,
    root_block_id: Optional[int] = None,
) -> Optional[BlockNode]:
    """Assemble flat rows into a nested tree and return its ROOT node.

    Args:
        rows: All block rows of one strategy, in any order
        conditions: Condition leaves keyed by condition id
        actions: Action leaves keyed by action id
        root_block_id: Expected ROOT id (the strategy's root_block_id)

    Returns:
        The ROOT node, or None when there are no rows and no root is expected

    Raises:
        CorruptTreeError: dangling parent, zero or several ROOTs, ROOT
            mismatch, cycle, unreachable block, duplicate sibling order,
            children under an ACTION, or a missing/mismatched leaf
    """
    conditions = conditions or {}
    actions = actions or {}

    by_id: dict[int, BlockRow] = {}
    for row in rows:
        if row.id in by_id:
            raise _corrupt("duplicate block id", block_id=row.id)
        by_id[row.id] = row

    if not by_id:
        if root_block_id is not None:
            raise _corrupt("root block missing", root_block_id=root_block_id)
        return None

    roots: list[BlockRow] = []
    children_by_parent: dict[int, list[BlockRow]] = defaultdict(list)
    for row in by_id.values():
        if row.block_type is BlockType.ROOT:
            if row.parent_id is not None:
                raise _corrupt("root block has a parent", block_id=row.id)
            roots.append(row)
            continue
        if row.parent_id is None:
            raise _corrupt("non-root block has no parent", block_id=row.id)
        if row.parent_id not in by_id:
            raise _corrupt("dangling parent reference", block_id=row.id, parent_id=row.parent_id)
        children_by_parent[row.parent_id].append(row)

    if len(roots) != 1:
        raise _corrupt("expected exactly one root block", root_ids=sorted(r.id for r in roots))
    root_row = roots[0]
    if root_block_id is not None and root_row.id != root_block_id:
        raise _corrupt("root block does not match strategy", block_id=root_row.id, root_block_id=root_block_id)

    for parent_id, siblings in children_by_parent.items():
        siblings.sort(key=lambda r: r.order)
        orders = [r.order for r in siblings]
        if len(set(orders)) != len(orders):
            raise _corrupt("duplicate sibling order", parent_id=parent_id)
        if not by_id[parent_id].block_type.can_have_children:
            raise _corrupt("action block has children", block_id=parent_id)

    nodes: dict[int, BlockNode] = {}
    queue = [root_row]
    while queue:
        row = queue.pop()
        try:
            nodes[row.id] = BlockNode(
                id=row.id,
                block_type=row.block_type,
                order=row.order,
                parameters=dict(row.parameters),
                leaf=_resolve_leaf(row, conditions, actions),
            )
        except ValueError as e:
            raise _corrupt(str(e), block_id=row.id) from e
        queue.extend(children_by_parent.get(row.id, ()))

    if len(nodes) != len(by_id):
        unreachable = sorted(set(by_id) - set(nodes))
        for block_id in unreachable:
            cycle = _find_cycle(block_id, by_id)
            if cycle:
                raise _corrupt("cycle detected", block_ids=cycle)
        raise _corrupt("blocks unreachable from root", block_ids=unreachable)

    for parent_id, siblings in children_by_parent.items():
        nodes[parent_id].children = [nodes[r.id] for r in siblings]

    return nodes[root_row.id]


def nest(
    strategy: Any,
    rows: Iterable[BlockRow],
    conditions: Optional[Mapping[int, ConditionLeaf]] = None,
    actions: Optional[Mapping[int, ActionLeaf]] = None,
) -> StrategyTree:
    """Build a StrategyTree from a strategy record and its flat rows.

    Args:
        strategy: Strategy ORM instance (or any object with the same attributes)
        rows: Block rows of that strategy
        conditions: Condition leaves keyed by id
        actions: Action leaves keyed by id
    """
    rows = list(rows)
    foreign = [r.id for r in rows if r.strategy_id != strategy.id]
    if foreign:
        raise _corrupt("block belongs to another strategy", block_ids=foreign)

    root = nest_blocks(rows, conditions, actions, root_block_id=strategy.root_block_id)
    if root is not None and strategy.root_block_id is None:
        raise _corrupt("strategy has blocks but no root_block_id", block_id=root.id)

    return StrategyTree(
        id=strategy.id,
        owner_id=strategy.owner_id,
        name=strategy.name,
        description=strategy.description,
        is_active=strategy.is_active,
        root_block_id=strategy.root_block_id,
        root=root,
        created_at=getattr(strategy, "created_at", None),
        updated_at=getattr(strategy, "updated_at", None),
    )


def iter_blocks(root: Optional[BlockNode]) -> Iterator[tuple[BlockNode, Optional[int], int]]:
    """Walk a tree depth-first, children in ascending order.

    Yields:
        (node, parent_id, depth) with depth 0 for the root
    """
    if root is None:
        return
    stack: list[tuple[BlockNode, Optional[int], int]] = [(root, None, 0)]
    while stack:
        node, parent_id, depth = stack.pop()
        yield node, parent_id, depth
        ordered = sorted(node.children, key=lambda c: c.order)
        for child in reversed(ordered):
            stack.append((child, node.id, depth + 1))


def flatten(tree: Union[StrategyTree, BlockNode], strategy_id: Optional[int] = None) -> list[BlockRow]:
    """Flatten a tree into block rows, depth-first by sibling order.

    Args:
        tree: A StrategyTree, or a bare ROOT node together with strategy_id
        strategy_id: Required when tree is a BlockNode

    Returns:
        Rows in top-to-bottom display order, each keeping its order value
    """
    if isinstance(tree, StrategyTree):
        strategy_id = tree.id
        root = tree.root
    else:
        root = tree
        if strategy_id is None:
            raise ValueError("strategy_id is required when flattening a bare node")

    return [
        BlockRow(
            id=node.id,
            strategy_id=strategy_id,
            block_type=node.block_type,
            parent_id=parent_id,
            order=node.order,
            parameters=dict(node.parameters),
            condition_id=node.condition_id,
            action_id=node.action_id,
        )
        for node, parent_id, _ in iter_blocks(root)
    ]


def _requirement(operand: IndicatorOperand) -> IndicatorRequirement:
    return IndicatorRequirement(
        indicator_type=operand.indicator_type,
        symbol=operand.symbol,
        interval=operand.interval,
        data_source=operand.data_source,
        data_key=operand.data_key,
        parameters_key=json.dumps(operand.parameters, sort_keys=True, default=str),
    )


def indicator_requirements(tree: Union[StrategyTree, BlockNode, None]) -> list[IndicatorRequirement]:
    """List the distinct indicator series a tree's conditions read.

    Target indicators count as well. Order follows first appearance in
    a depth-first walk.
    """
    root = tree.root if isinstance(tree, StrategyTree) else tree
    seen: dict[IndicatorRequirement, None] = {}
    for node, _, _ in iter_blocks(root):
        condition = node.condition
        if condition is None:
            continue
        seen.setdefault(_requirement(condition.payload), None)
        if condition.payload.target_indicator is not None:
            seen.setdefault(_requirement(condition.payload.target_indicator), None)
    return list(seen)
