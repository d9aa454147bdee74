"""Per-run log directories for lookup-table generation.

Each run gets ``<log_dir>/runs/<run id>/pipeline.jsonl`` with every record at
DEBUG level, while the console shows the configured level.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..config import LOG_DIR
from .formatters import HumanReadableFormatter, JSONLogFormatter

RUN_LOG_NAME = "pipeline.jsonl"

# Handlers attached by setup_run_logging, removed again on the next setup
_run_handlers = []


def get_runs_dir(log_dir: Optional[Path] = None) -> Path:
    """Get (and create) the directory holding one folder per run."""
    runs_dir = Path(log_dir or LOG_DIR) / "runs"
    runs_dir.mkdir(parents=True, exist_ok=True)
    return runs_dir


def create_run_id() -> str:
    """Create a run ID based on timestamp.

    Returns:
        Run ID in format YYYY-MM-DD_HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d_%H-%M-%S")


def setup_run_logging(
    log_dir: Optional[Path] = None,
    run_id: Optional[str] = None,
    level: Union[int, str] = logging.INFO,
    logger_name: str = "pio_lookup",
) -> str:
    """Attach a JSONL file handler and a console handler for one run.

    Args:
        log_dir: Root log directory (defaults to the configured one)
        run_id: Specific run ID (auto-generated if None)
        level: Console log level
        logger_name: Logger the handlers are attached to

    Returns:
        The run ID
    """
    run_id = run_id or create_run_id()
    run_dir = get_runs_dir(log_dir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(logger_name)
    for handler in _run_handlers:
        logger.removeHandler(handler)
        handler.close()
    _run_handlers.clear()

    file_handler = logging.FileHandler(run_dir / RUN_LOG_NAME, encoding="utf-8")
    file_handler.setFormatter(JSONLogFormatter())
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(HumanReadableFormatter())
    console_handler.setLevel(level)

    for handler in (file_handler, console_handler):
        logger.addHandler(handler)
        _run_handlers.append(handler)
    logger.setLevel(logging.DEBUG)

    return run_id
