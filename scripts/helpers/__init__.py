"""Helper modules for scripts."""

from scripts.helpers.logging_setup import setup_script_logging

__all__ = [
    "setup_script_logging",
]
