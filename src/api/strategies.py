"""FastAPI router for block strategies.

Provides:
- GET    /api/strategies                        : list strategies of the caller
- POST   /api/strategies                        : create a strategy (with its ROOT)
- POST   /api/strategies/import                 : create a strategy from a document
- GET    /api/strategies/{id}                   : strategy with nested block tree
- PATCH  /api/strategies/{id}                   : update name/description/is_active
- DELETE /api/strategies/{id}                   : delete strategy and its tree
- POST   /api/strategies/{id}/root              : create the ROOT block
- GET    /api/strategies/{id}/export            : export document
- GET    /api/strategies/{id}/indicators        : indicator series the tree reads
- POST   /api/strategies/{id}/blocks            : add a block
- PATCH  /api/strategies/{id}/blocks/{block_id} : patch a block
- DELETE /api/strategies/{id}/blocks/{block_id} : delete a block subtree
- POST   /api/strategies/{id}/blocks/{block_id}/move: re-parent / reorder

All structural rules live in StrategyTreeService; the router only
checks ownership and maps StrategyTreeError subclasses to status codes.
Endpoints are sync so blocking lock waits run in the threadpool.
"""

import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Generator, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.api.auth_middleware import get_current_user
from src.data.database.dependencies import get_strategy_service
from src.strategy_tree.errors import (
    AlreadyInitializedError,
    CorruptTreeError,
    CycleRejectedError,
    ImmutableFieldError,
    InvalidPayloadError,
    NotFoundError,
    RootDeletionForbiddenError,
    StrategyBusyError,
    StrategyTreeError,
)
from src.strategy_tree.service import StrategyTreeService
from src.strategy_tree.types import BlockType, StrategyTree

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/strategies", tags=["strategies"])

# Checked in order, so subclasses must precede their bases
_STATUS_BY_ERROR: list[tuple[type[StrategyTreeError], int]] = [
    (NotFoundError, 404),
    (InvalidPayloadError, 400),
    (ImmutableFieldError, 400),
    (AlreadyInitializedError, 409),
    (RootDeletionForbiddenError, 409),
    (CycleRejectedError, 409),
    (StrategyBusyError, 409),
]


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------

class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class StrategyCreate(_RequestModel):
    """Create a new strategy."""
    name: str
    description: Optional[str] = None
    is_active: bool = False


class BlockCreate(_RequestModel):
    """Add a block under an existing parent.

    Condition blocks carry ``condition``; ACTION blocks carry ``action``.
    """
    parent_id: int
    block_type: BlockType
    condition: Optional[dict[str, Any]] = None
    action: Optional[dict[str, Any]] = None
    order: Optional[int] = Field(default=None, ge=0)
    parameters: dict[str, Any] = Field(default_factory=dict)


class BlockMove(_RequestModel):
    """Move a block under a new parent, optionally at a given order."""
    new_parent_id: int
    new_order: Optional[int] = Field(default=None, ge=0)


class StrategyImport(_RequestModel):
    """Import an exported strategy document."""
    document: dict[str, Any]
    name: Optional[str] = None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

@contextmanager
def _translate_errors() -> Generator[None, None, None]:
    """Map service errors to HTTPException."""
    try:
        yield
    except CorruptTreeError as e:
        # Already logged with context by the service
        raise HTTPException(status_code=500, detail="Strategy data is inconsistent") from e
    except StrategyTreeError as e:
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(e, error_type):
                raise HTTPException(status_code=status_code, detail=e.to_dict()) from e
        logger.error("Unmapped strategy tree error: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error") from e


def _owned_strategy(service: StrategyTreeService, strategy_id: int, user_id: str) -> StrategyTree:
    """Load a strategy and check that the caller owns it."""
    with _translate_errors():
        tree = service.get_strategy(strategy_id)
    if tree.owner_id != user_id:
        logger.warning("User %s denied access to strategy %s", user_id, strategy_id)
        raise HTTPException(status_code=403, detail="Not the owner of this strategy")
    return tree


# -----------------------------------------------------------------------------
# Strategy endpoints
# -----------------------------------------------------------------------------

@router.get("")
def list_strategies(
    active_only: bool = Query(default=False),
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """List strategies of the authenticated user, newest first."""
    summaries = service.list_strategies(user_id, active_only=active_only)
    return [
        {
            **asdict(s),
            "created_at": s.created_at.isoformat() if s.created_at else None,
            "updated_at": s.updated_at.isoformat() if s.updated_at else None,
        }
        for s in summaries
    ]


@router.post("", status_code=201)
def create_strategy(
    data: StrategyCreate,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Create a strategy together with its ROOT block."""
    with _translate_errors():
        tree = service.create_strategy(user_id, data.name, data.description, is_active=data.is_active)
    return tree.to_dict()


@router.post("/import", status_code=201)
def import_strategy(
    data: StrategyImport,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Create a new strategy owned by the caller from an export document."""
    with _translate_errors():
        tree = service.import_strategy(user_id, data.document, name=data.name)
    return tree.to_dict()


@router.get("/{strategy_id}")
def get_strategy(
    strategy_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Return the strategy with its nested block tree."""
    return _owned_strategy(service, strategy_id, user_id).to_dict()


@router.patch("/{strategy_id}")
def update_strategy(
    strategy_id: int,
    patch: dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Update name, description or is_active."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        tree = service.update_strategy(strategy_id, patch)
    return tree.to_dict()


@router.delete("/{strategy_id}")
def delete_strategy(
    strategy_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Delete the strategy, its blocks and their leaf facts."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        result = service.delete_strategy(strategy_id)
    return asdict(result)


@router.post("/{strategy_id}/root", status_code=201)
def create_root(
    strategy_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Create the ROOT block of a strategy created without one."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        node = service.create_root(strategy_id)
    return node.to_dict()


@router.get("/{strategy_id}/export")
def export_strategy(
    strategy_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        return service.export_strategy(strategy_id)


@router.get("/{strategy_id}/indicators")
def get_indicator_requirements(
    strategy_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Distinct indicator series the strategy's conditions read."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        requirements = service.get_indicator_requirements(strategy_id)
    return [
        {
            "indicator_type": r.indicator_type,
            "symbol": r.symbol,
            "interval": r.interval,
            "data_source": r.data_source,
            "data_key": r.data_key,
            "parameters": r.parameters,
        }
        for r in requirements
    ]


# -----------------------------------------------------------------------------
# Block endpoints
# -----------------------------------------------------------------------------

@router.post("/{strategy_id}/blocks", status_code=201)
def add_block(
    strategy_id: int,
    data: BlockCreate,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Add a block (and its condition or action) under an existing parent."""
    if data.condition is not None and data.action is not None:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_payload", "message": "Provide either condition or action, not both"},
        )
    _owned_strategy(service, strategy_id, user_id)
    payload = data.condition if data.condition is not None else data.action
    with _translate_errors():
        node = service.add_block(
            strategy_id,
            data.parent_id,
            data.block_type,
            payload=payload,
            order=data.order,
            parameters=data.parameters,
        )
    return node.to_dict()


@router.patch("/{strategy_id}/blocks/{block_id}")
def update_block(
    strategy_id: int,
    block_id: int,
    patch: dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Patch parameters, order, or fields of the block's condition/action."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        node = service.update_block(strategy_id, block_id, patch)
    return node.to_dict()


@router.delete("/{strategy_id}/blocks/{block_id}")
def delete_block(
    strategy_id: int,
    block_id: int,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Delete a block with its whole subtree."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        result = service.delete_block(strategy_id, block_id)
    return asdict(result)


@router.post("/{strategy_id}/blocks/{block_id}/move")
def move_block(
    strategy_id: int,
    block_id: int,
    data: BlockMove,
    user_id: str = Depends(get_current_user),
    service: StrategyTreeService = Depends(get_strategy_service),
):
    """Re-parent and/or reorder a block."""
    _owned_strategy(service, strategy_id, user_id)
    with _translate_errors():
        node = service.move_block(strategy_id, block_id, data.new_parent_id, data.new_order)
    return node.to_dict()
