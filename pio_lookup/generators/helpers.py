"""Small string and file helpers used across the generators."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CHOICE_MARKER = "[x]"


def normalize_element_path(path: str) -> str:
    """Rewrite an element id into the dotted path used by the lookup tables.

    Choice-type segments ("value[x]:valueString") collapse to the sliced
    column ("valueString"). Once a path contains a choice marker, every other
    slice qualifier is stripped as well, except extension slices. Paths
    without a choice marker are returned unchanged, so the function is
    idempotent.

    Examples:
        "Observation.value[x]:valueString" -> "Observation.valueString"
        "resource.extension:extensionString" -> unchanged
        "[x]" -> unchanged
    """
    if CHOICE_MARKER not in path:
        return path
    segments = path.split(".")

    for i in range(len(segments) - 1, -1, -1):
        if CHOICE_MARKER in segments[i]:
            parts = segments[i].split(":")
            if len(parts) > 1:
                segments[i] = parts[1]
        if ":" in segments[i] and not segments[i].startswith("extension:"):
            segments[i] = segments[i].split(":")[0]
    return ".".join(segments)


def capitalize(value: Optional[str]) -> Optional[str]:
    """Uppercase the first letter, leaving the rest untouched."""
    if value is None:
        return None
    if not value:
        return value
    return value[0].upper() + value[1:]


def strip_version(url: str) -> str:
    """Drop a trailing "|version" from a canonical reference."""
    return url.split("|")[0]


def read_json_file(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON document, returning None if it can't be parsed.

    Args:
        path: File to read

    Returns:
        The parsed object, or None for unreadable or non-object files
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f'Error parsing JSON file "{path}": {e}')
        return None
    if not isinstance(data, dict):
        logger.warning(f'Skipping "{path}": top-level value is not an object')
        return None
    return data


def write_json_file(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
