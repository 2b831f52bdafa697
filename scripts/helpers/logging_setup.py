"""Logging setup helper for command line scripts."""

from pathlib import Path

from config.settings import get_settings
from src.utils.logging import setup_logging, get_logger


def setup_script_logging(verbose: bool, logger_name: str, log_file: str | Path | None = None):
    """Configure human-readable logging for a script and return its logger.

    Args:
        verbose: Enable debug logging if True
        logger_name: Name for the logger
        log_file: Optional log file path; defaults to the configured one
    """
    settings = get_settings()
    setup_logging(
        level="DEBUG" if verbose else settings.logging.level,
        format="text",
        file=log_file if log_file is not None else settings.logging.file,
        rotate_size_mb=settings.logging.rotate_size_mb,
        retain_count=settings.logging.retain_count,
    )
    return get_logger(logger_name)
