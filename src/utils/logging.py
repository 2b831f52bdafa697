"""Structured logging for the strategy block tree service.

Provides JSON-formatted logging with context support for
tree mutation tracking, debugging, and monitoring.
"""

import json
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

# LogRecord attributes that are never treated as structured context
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename",
    "funcName", "levelname", "levelno", "lineno",
    "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info",
    "thread", "threadName", "exc_info", "exc_text",
    "message", "asctime", "taskName",
))


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Return the extra= fields attached to a log record."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS
    }


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extras: bool = True):
        """Initialize JSON formatter.

        Args:
            include_extras: Include extra fields in output
        """
        super().__init__()
        self._include_extras = include_extras

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted string
        """
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._include_extras:
            extras = {}
            for key, value in _record_context(record).items():
                try:
                    json.dumps(value)  # Check if serializable
                    extras[key] = value
                except (TypeError, ValueError):
                    extras[key] = str(value)

            if extras:
                log_data["context"] = extras

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Text formatter with context support."""

    def __init__(self):
        """Initialize text formatter."""
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as text, appending key=value context."""
        base = super().format(record)

        extras = [f"{key}={value}" for key, value in _record_context(record).items()]
        if extras:
            return f"{base} | {' '.join(extras)}"

        return base


class TreeEventLogger:
    """Specialized logger for strategy tree lifecycle events.

    Every method logs one event with a stable ``event`` name so the
    JSON output can be filtered per mutation kind.

    Example:
        >>> logger = TreeEventLogger("src.strategy_tree.service")
        >>> logger.block_added(strategy_id=1, block_id=7, parent_id=1,
        ...                    block_type="ACTION", order=0)
    """

    def __init__(self, name: str):
        """Initialize tree event logger.

        Args:
            name: Logger name
        """
        self._logger = logging.getLogger(name)

    def strategy_created(self, strategy_id: int, owner_id: str, root_block_id: int, **context: Any) -> None:
        self._logger.info(
            f"Strategy created: {strategy_id} root={root_block_id}",
            extra={
                "event": "strategy_created",
                "strategy_id": strategy_id,
                "owner_id": owner_id,
                "root_block_id": root_block_id,
                **context,
            },
        )

    def strategy_deleted(self, strategy_id: int, block_count: int, **context: Any) -> None:
        self._logger.info(
            f"Strategy deleted: {strategy_id} ({block_count} blocks)",
            extra={
                "event": "strategy_deleted",
                "strategy_id": strategy_id,
                "block_count": block_count,
                **context,
            },
        )

    def block_added(
        self,
        strategy_id: int,
        block_id: int,
        parent_id: int,
        block_type: str,
        order: int,
        **context: Any,
    ) -> None:
        """Log block creation.

        Args:
            strategy_id: Owning strategy
            block_id: New block id
            parent_id: Parent block id
            block_type: Block kind
            order: Assigned sibling order
            **context: Additional context
        """
        self._logger.info(
            f"Block added: {block_type} {block_id} under {parent_id} order={order}",
            extra={
                "event": "block_added",
                "strategy_id": strategy_id,
                "block_id": block_id,
                "parent_id": parent_id,
                "block_type": block_type,
                "order": order,
                **context,
            },
        )

    def block_updated(self, strategy_id: int, block_id: int, fields: Iterable[str], **context: Any) -> None:
        fields = sorted(fields)
        self._logger.info(
            f"Block updated: {block_id} fields={fields}",
            extra={
                "event": "block_updated",
                "strategy_id": strategy_id,
                "block_id": block_id,
                "fields": fields,
                **context,
            },
        )

    def block_moved(
        self,
        strategy_id: int,
        block_id: int,
        old_parent_id: int,
        new_parent_id: int,
        order: int,
        **context: Any,
    ) -> None:
        self._logger.info(
            f"Block moved: {block_id} {old_parent_id} -> {new_parent_id} order={order}",
            extra={
                "event": "block_moved",
                "strategy_id": strategy_id,
                "block_id": block_id,
                "old_parent_id": old_parent_id,
                "new_parent_id": new_parent_id,
                "order": order,
                **context,
            },
        )

    def blocks_deleted(self, strategy_id: int, block_ids: list[int], **context: Any) -> None:
        self._logger.info(
            f"Blocks deleted: {len(block_ids)} from strategy {strategy_id}",
            extra={
                "event": "blocks_deleted",
                "strategy_id": strategy_id,
                "block_ids": list(block_ids),
                **context,
            },
        )

    def corrupt_tree(self, strategy_id: int, reason: str, **context: Any) -> None:
        """Log an internal-consistency fault found while materializing a tree.

        Args:
            strategy_id: Strategy whose rows are inconsistent
            reason: What the materializer detected
            **context: Offending ids
        """
        self._logger.error(
            f"Corrupt strategy tree {strategy_id}: {reason}",
            extra={
                "event": "corrupt_tree",
                "strategy_id": strategy_id,
                "reason": reason,
                **context,
            },
        )

    def warning(self, message: str, **context: Any) -> None:
        self._logger.warning(message, extra={"event": "warning", **context})


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    file: str | Path | None = None,
    rotate_size_mb: int = 10,
    retain_count: int = 5,
) -> None:
    """Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        format: Log format ('json' or 'text')
        file: Log file path (None for stdout only)
        rotate_size_mb: Log rotation size in MB
        retain_count: Number of rotated files to retain
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    if format == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if file:
        file_path = Path(file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=rotate_size_mb * 1024 * 1024,
            backupCount=retain_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Route uvicorn loggers through the root handlers
    for uvicorn_logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(uvicorn_logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def get_tree_logger(name: str) -> TreeEventLogger:
    """Get a tree event logger instance.

    Args:
        name: Logger name

    Returns:
        TreeEventLogger instance
    """
    return TreeEventLogger(name)
