"""Error taxonomy for strategy tree operations.

User-input errors carry a ``detail`` dict naming the offending id or
field so callers can report it. CorruptTreeError is the only error that
signals a defect rather than bad input.
"""

from typing import Any


class StrategyTreeError(Exception):
    """Base class for all strategy tree errors."""

    code = "strategy_tree_error"
    retryable = False

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable, **self.detail}


class NotFoundError(StrategyTreeError):
    """Referenced strategy or block does not exist."""

    code = "not_found"


class ParentNotFoundError(NotFoundError):
    """Parent block is absent or belongs to another strategy."""

    code = "parent_not_found"


class InvalidPayloadError(StrategyTreeError):
    """Leaf payload missing required fields or wrong for the block kind."""

    code = "invalid_payload"


class AlreadyInitializedError(StrategyTreeError):
    """A root block already exists for the strategy."""

    code = "already_initialized"


class RootDeletionForbiddenError(StrategyTreeError):
    """The ROOT block can only go away with its strategy."""

    code = "root_deletion_forbidden"


class CycleRejectedError(StrategyTreeError):
    """Move would place a block under itself or one of its descendants."""

    code = "cycle_rejected"


class ImmutableFieldError(StrategyTreeError):
    """Patch attempts to change a locked field."""

    code = "immutable"


class StrategyBusyError(StrategyTreeError):
    """Per-strategy lock could not be acquired in time. Safe to retry."""

    code = "strategy_busy"
    retryable = True


class CorruptTreeError(StrategyTreeError):
    """Persisted rows violate a structural invariant.

    Raised by the materializer. Never caused by user input and never
    worth retrying: it means the mutation layer has a bug or the rows
    were edited out of band.
    """

    code = "corrupt_tree"
