"""Bulk export/import documents for strategy trees.

An exported document is the flattened tree (depth-first by sibling
order) with each block's leaf payload inlined, keyed by the block ids
of the source strategy ("ref"). Importing validates the document, nests
it once to prove it is a well-formed tree, and hands back the rows in
parent-before-child order for insertion under fresh ids.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from src.strategy_tree.errors import CorruptTreeError, InvalidPayloadError
from src.strategy_tree.materializer import flatten, nest_blocks
from src.strategy_tree.types import (
    ActionLeaf,
    ActionPayload,
    BlockNode,
    BlockRow,
    BlockType,
    ConditionLeaf,
    ConditionPayload,
    StrategyTree,
)


class ExportedBlock(BaseModel):
    """One flattened block with its leaf payload inlined."""

    model_config = ConfigDict(extra="forbid")

    ref: int
    parent_ref: Optional[int] = None
    block_type: BlockType
    order: int = Field(ge=0)
    parameters: dict[str, Any] = Field(default_factory=dict)
    condition: Optional[ConditionPayload] = None
    action: Optional[ActionPayload] = None

    @model_validator(mode="after")
    def _check_leaf_kind(self) -> "ExportedBlock":
        if self.block_type.needs_condition != (self.condition is not None):
            raise ValueError(f"block {self.ref}: condition payload does not match {self.block_type.value}")
        if self.block_type.needs_action != (self.action is not None):
            raise ValueError(f"block {self.ref}: action payload does not match {self.block_type.value}")
        return self


class StrategyDocument(BaseModel):
    """Portable representation of one strategy and its block tree."""

    model_config = ConfigDict(extra="forbid")

    format_version: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = False
    blocks: list[ExportedBlock]


def export_document(tree: StrategyTree, format_version: int) -> dict[str, Any]:
    """Serialize a materialized tree into a JSON-ready document."""
    nodes: dict[int, BlockNode] = {}
    if tree.root is not None:
        stack = [tree.root]
        while stack:
            node = stack.pop()
            nodes[node.id] = node
            stack.extend(node.children)

    blocks = []
    for row in flatten(tree):
        node = nodes[row.id]
        blocks.append(
            ExportedBlock(
                ref=row.id,
                parent_ref=row.parent_id,
                block_type=row.block_type,
                order=row.order,
                parameters=row.parameters,
                condition=node.condition.payload if node.condition else None,
                action=node.action.payload if node.action else None,
            )
        )

    document = StrategyDocument(
        format_version=format_version,
        name=tree.name,
        description=tree.description,
        is_active=tree.is_active,
        blocks=blocks,
    )
    return document.model_dump(mode="json", by_alias=False)


def parse_document(data: Any, max_format_version: int) -> tuple[StrategyDocument, BlockNode]:
    """Validate an import document and nest its blocks.

    Returns:
        The parsed document and the ROOT node of its tree (ids are refs)

    Raises:
        InvalidPayloadError: schema errors, unsupported version, or a
            block list that does not form a single rooted tree
    """
    try:
        document = StrategyDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidPayloadError(
            "Invalid strategy document",
            errors=e.errors(include_url=False, include_context=False),
        ) from e

    if document.format_version > max_format_version:
        raise InvalidPayloadError(
            f"Unsupported document format_version {document.format_version}",
            field="format_version",
        )

    rows = []
    conditions: dict[int, ConditionLeaf] = {}
    actions: dict[int, ActionLeaf] = {}
    for block in document.blocks:
        rows.append(
            BlockRow(
                id=block.ref,
                strategy_id=0,
                block_type=block.block_type,
                parent_id=block.parent_ref,
                order=block.order,
                parameters=block.parameters,
                condition_id=block.ref if block.condition else None,
                action_id=block.ref if block.action else None,
            )
        )
        if block.condition is not None:
            conditions[block.ref] = ConditionLeaf(id=block.ref, payload=block.condition)
        if block.action is not None:
            actions[block.ref] = ActionLeaf(id=block.ref, payload=block.action)

    try:
        root = nest_blocks(rows, conditions, actions)
    except CorruptTreeError as e:
        raise InvalidPayloadError(
            f"Document blocks do not form a valid tree: {e.detail.get('reason')}",
            **{k: v for k, v in e.detail.items() if k != "reason"},
        ) from e
    if root is None:
        raise InvalidPayloadError("Document has no blocks", field="blocks")
    return document, root
