"""Hierarchical strategy block trees.

- types: block kinds, leaf payloads, nested tree nodes
- materializer: flat rows <-> nested tree, depth-first walk
- service: StrategyTreeService, the transactional mutation API
- transfer: export/import documents
- locks: per-strategy mutation locks
- errors: error taxonomy
"""

from src.strategy_tree.errors import (
    AlreadyInitializedError,
    CorruptTreeError,
    CycleRejectedError,
    ImmutableFieldError,
    InvalidPayloadError,
    NotFoundError,
    ParentNotFoundError,
    RootDeletionForbiddenError,
    StrategyBusyError,
    StrategyTreeError,
)
from src.strategy_tree.locks import StrategyLockRegistry
from src.strategy_tree.materializer import flatten, indicator_requirements, iter_blocks, nest, nest_blocks
from src.strategy_tree.service import StrategyTreeService
from src.strategy_tree.types import (
    ActionLeaf,
    ActionPayload,
    ActionType,
    BlockNode,
    BlockRow,
    BlockType,
    ConditionLeaf,
    ConditionPayload,
    DeleteResult,
    IndicatorOperand,
    IndicatorRequirement,
    Operator,
    StrategySummary,
    StrategyTree,
)

__all__ = [
    # Errors
    "StrategyTreeError",
    "NotFoundError",
    "ParentNotFoundError",
    "InvalidPayloadError",
    "AlreadyInitializedError",
    "RootDeletionForbiddenError",
    "CycleRejectedError",
    "ImmutableFieldError",
    "StrategyBusyError",
    "CorruptTreeError",
    # Types
    "BlockType",
    "Operator",
    "ActionType",
    "IndicatorOperand",
    "ConditionPayload",
    "ActionPayload",
    "ConditionLeaf",
    "ActionLeaf",
    "BlockRow",
    "BlockNode",
    "StrategyTree",
    "StrategySummary",
    "DeleteResult",
    "IndicatorRequirement",
    # Materializer
    "nest",
    "nest_blocks",
    "flatten",
    "iter_blocks",
    "indicator_requirements",
    # Service
    "StrategyTreeService",
    "StrategyLockRegistry",
]
