"""Core types for block-based strategies.

Defines:
- BlockType, Operator, ActionType: enumerations shared by storage and API
- IndicatorOperand, ConditionPayload, ActionPayload: validated leaf payloads
- ConditionLeaf, ActionLeaf: persisted leaf facts (payload + identity)
- BlockRow: flat persisted shape of a block
- BlockNode, StrategyTree: nested in-memory tree produced by the materializer

Payload models accept both snake_case and camelCase keys so documents
written by the UI (``indicatorType``, ``targetValue``) validate unchanged.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class BlockType(str, Enum):
    """Kind of a strategy block."""

    ROOT = "ROOT"
    CONDITION_IF = "CONDITION_IF"
    CONDITION_ELSE = "CONDITION_ELSE"
    ACTION = "ACTION"

    @property
    def needs_condition(self) -> bool:
        return self in (BlockType.CONDITION_IF, BlockType.CONDITION_ELSE)

    @property
    def needs_action(self) -> bool:
        return self is BlockType.ACTION

    @property
    def can_have_children(self) -> bool:
        return self is not BlockType.ACTION


class Operator(str, Enum):
    """Comparison between an indicator reading and its target."""

    LESS_THAN = "LESS_THAN"
    GREATER_THAN = "GREATER_THAN"
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"
    CROSSES_ABOVE = "CROSSES_ABOVE"
    CROSSES_BELOW = "CROSSES_BELOW"


# Symbolic and UI-label spellings accepted on input
OPERATOR_ALIASES: dict[str, Operator] = {
    "EQUAL": Operator.EQUALS,
    "=": Operator.EQUALS,
    "==": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    "<": Operator.LESS_THAN,
    ">=": Operator.GREATER_THAN_OR_EQUAL,
    "<=": Operator.LESS_THAN_OR_EQUAL,
    "= (Equals)": Operator.EQUALS,
    "≠ (Not Equals)": Operator.NOT_EQUALS,
    "> (Greater Than)": Operator.GREATER_THAN,
    "< (Less Than)": Operator.LESS_THAN,
    "≥ (Greater Than or Equal)": Operator.GREATER_THAN_OR_EQUAL,
    "≤ (Less Than or Equal)": Operator.LESS_THAN_OR_EQUAL,
    "↗ (Crosses Above)": Operator.CROSSES_ABOVE,
    "↘ (Crosses Below)": Operator.CROSSES_BELOW,
}


def parse_operator(value: Any) -> Any:
    """Map an operator alias to its Operator member; pass anything else through."""
    if isinstance(value, Operator):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped in OPERATOR_ALIASES:
            return OPERATOR_ALIASES[stripped]
        return stripped.upper()
    return value


class ActionType(str, Enum):
    """Effect an ACTION block performs."""

    BUY = "BUY"
    SELL = "SELL"
    NOTIFY = "NOTIFY"
    LOG_MESSAGE = "LOG_MESSAGE"
    REBALANCE = "REBALANCE"


ORDER_ACTIONS = (ActionType.BUY, ActionType.SELL)


# -----------------------------------------------------------------------------
# Leaf payloads
# -----------------------------------------------------------------------------

class _PayloadModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    def to_record(self) -> dict[str, Any]:
        """Dump with snake_case keys and enum values as strings."""
        return self.model_dump(mode="json", by_alias=False)


class IndicatorOperand(_PayloadModel):
    """An indicator reading: what to compute, on which series."""

    indicator_type: str = Field(min_length=1)
    symbol: Optional[str] = None
    interval: Optional[str] = None
    data_source: Optional[str] = None
    data_key: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class ConditionPayload(IndicatorOperand):
    """Condition leaf: indicator compared to a constant or another indicator.

    Exactly one of target_value / target_indicator must be set.
    """

    operator: Operator
    target_value: Optional[float] = None
    target_indicator: Optional[IndicatorOperand] = None

    @field_validator("operator", mode="before")
    @classmethod
    def _parse_operator(cls, v: Any) -> Any:
        return parse_operator(v)

    @model_validator(mode="after")
    def _check_single_target(self) -> "ConditionPayload":
        has_value = self.target_value is not None
        has_indicator = self.target_indicator is not None
        if has_value == has_indicator:
            raise ValueError("exactly one of target_value or target_indicator is required")
        return self


class ActionPayload(_PayloadModel):
    """Action leaf: an effect and its parameters.

    order is display-only; sibling block order decides execution order.
    """

    action_type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    order: int = Field(default=0, ge=0)

    @field_validator("action_type", mode="before")
    @classmethod
    def _upper_action_type(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _check_order_parameters(self) -> "ActionPayload":
        if self.action_type in ORDER_ACTIONS:
            missing = []
            if not self.parameters.get("symbol"):
                missing.append("parameters.symbol")
            if self.parameters.get("quantity") is None and self.parameters.get("notional") is None:
                missing.append("parameters.quantity|notional")
            if not self.parameters.get("orderType"):
                missing.append("parameters.orderType")
            if missing:
                raise ValueError(
                    f"{self.action_type.value} action is missing {', '.join(missing)}"
                )
        return self


LeafPayload = Union[ConditionPayload, ActionPayload]


# -----------------------------------------------------------------------------
# Persisted shapes
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ConditionLeaf:
    """A persisted Condition and the payload it holds."""

    id: int
    payload: ConditionPayload
    target_condition_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "target_condition_id": self.target_condition_id, **self.payload.to_record()}


@dataclass(frozen=True)
class ActionLeaf:
    """A persisted Action and the payload it holds."""

    id: int
    payload: ActionPayload

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, **self.payload.to_record()}


Leaf = Union[ConditionLeaf, ActionLeaf]


@dataclass(frozen=True)
class BlockRow:
    """Flat persisted shape of a block, as stored in strategy_blocks."""

    id: int
    strategy_id: int
    block_type: BlockType
    parent_id: Optional[int]
    order: int
    parameters: dict[str, Any] = field(default_factory=dict, hash=False)
    condition_id: Optional[int] = None
    action_id: Optional[int] = None

    @classmethod
    def from_model(cls, model: Any) -> "BlockRow":
        """Build from a StrategyBlock ORM instance (or anything shaped like one)."""
        return cls(
            id=model.id,
            strategy_id=model.strategy_id,
            block_type=BlockType(model.block_type),
            parent_id=model.parent_id,
            order=model.order,
            parameters=dict(model.parameters or {}),
            condition_id=model.condition_id,
            action_id=model.action_id,
        )


@dataclass
class BlockNode:
    """Node of a materialized tree.

    Parents own their children list; nodes hold no parent reference.
    The leaf must match the block kind: None for ROOT, a ConditionLeaf
    for CONDITION_IF/CONDITION_ELSE and an ActionLeaf for ACTION.
    """

    id: int
    block_type: BlockType
    order: int
    parameters: dict[str, Any] = field(default_factory=dict)
    leaf: Optional[Leaf] = None
    children: list["BlockNode"] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.block_type, str):
            self.block_type = BlockType(self.block_type)
        if self.block_type.needs_condition:
            expected = ConditionLeaf
        elif self.block_type.needs_action:
            expected = ActionLeaf
        else:
            expected = type(None)
        if not isinstance(self.leaf, expected):
            raise ValueError(
                f"{self.block_type.value} block {self.id} cannot hold leaf "
                f"{type(self.leaf).__name__}"
            )
        if self.children and not self.block_type.can_have_children:
            raise ValueError(f"{self.block_type.value} block {self.id} cannot have children")

    @property
    def condition(self) -> Optional[ConditionLeaf]:
        return self.leaf if isinstance(self.leaf, ConditionLeaf) else None

    @property
    def action(self) -> Optional[ActionLeaf]:
        return self.leaf if isinstance(self.leaf, ActionLeaf) else None

    @property
    def condition_id(self) -> Optional[int]:
        return self.leaf.id if isinstance(self.leaf, ConditionLeaf) else None

    @property
    def action_id(self) -> Optional[int]:
        return self.leaf.id if isinstance(self.leaf, ActionLeaf) else None

    def find(self, block_id: int) -> Optional["BlockNode"]:
        """Depth-first search for a block id in this subtree."""
        stack = [self]
        while stack:
            node = stack.pop()
            if node.id == block_id:
                return node
            stack.extend(node.children)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for renderers; children in ascending order."""
        return {
            "id": self.id,
            "block_type": self.block_type.value,
            "order": self.order,
            "parameters": self.parameters,
            "condition": self.condition.to_dict() if self.condition else None,
            "action": self.action.to_dict() if self.action else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class StrategyTree:
    """A strategy with its nested block tree."""

    id: int
    owner_id: str
    name: str
    description: Optional[str]
    is_active: bool
    root_block_id: Optional[int]
    root: Optional[BlockNode] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def find(self, block_id: int) -> Optional[BlockNode]:
        return self.root.find(block_id) if self.root else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "root_block_id": self.root_block_id,
            "root": self.root.to_dict() if self.root else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of deleting a block subtree."""

    deleted_ids: list[int]
    deleted_condition_ids: list[int] = field(default_factory=list)
    deleted_action_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class IndicatorRequirement:
    """A distinct indicator series a strategy needs to be evaluated."""

    indicator_type: str
    symbol: Optional[str]
    interval: Optional[str]
    data_source: Optional[str]
    data_key: Optional[str]
    parameters_key: str

    @property
    def parameters(self) -> dict[str, Any]:
        return json.loads(self.parameters_key)


@dataclass(frozen=True)
class StrategySummary:
    """Strategy metadata without its block tree (listing view)."""

    id: int
    owner_id: str
    name: str
    description: Optional[str]
    is_active: bool
    root_block_id: Optional[int]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, model: Any) -> "StrategySummary":
        return cls(
            id=model.id,
            owner_id=model.owner_id,
            name=model.name,
            description=model.description,
            is_active=model.is_active,
            root_block_id=model.root_block_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
