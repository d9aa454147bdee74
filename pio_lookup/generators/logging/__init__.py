"""Logging package for lookup-table generation runs.

Components:
- formatters: JSON and human-readable log formatters
- handlers: Per-run log directory setup
"""

from .formatters import HumanReadableFormatter, JSONLogFormatter
from .handlers import create_run_id, get_runs_dir, setup_run_logging

__all__ = [
    # Formatters
    "JSONLogFormatter",
    "HumanReadableFormatter",
    # Handlers
    "create_run_id",
    "get_runs_dir",
    "setup_run_logging",
]
