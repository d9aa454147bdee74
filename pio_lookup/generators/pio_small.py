"""PIO-Small: the path table reduced by an exclusions document.

The exclusions document maps profile names to::

    {
        "wholeResourceExcluded": bool,
        "translation": str,
        "cardinalityReducedToOne": [str, ...],
        "excludedPaths": {path: German translation or null} | null
    }
"""

import copy
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import EXCLUSIONS_FILE
from .helpers import read_json_file
from .models import ResourceTable

logger = logging.getLogger(__name__)

Exclusions = Dict[str, Dict[str, Any]]

SLICE_QUALIFIER_PATTERN = re.compile(r":[a-zA-Z\-_]+")


def load_exclusions(path: Optional[Path] = None) -> Exclusions:
    """Read the exclusions document, empty if it is missing or malformed."""
    path = Path(path) if path is not None else EXCLUSIONS_FILE
    exclusions = read_json_file(path)
    if exclusions is None:
        logger.warning(f"No PIO-Small exclusions loaded from {path}")
        return {}
    return exclusions


def _has_excluded_paths(exclusion: Optional[Dict[str, Any]]) -> bool:
    return bool(exclusion) and not exclusion.get("wholeResourceExcluded") and exclusion.get("excludedPaths") is not None


def delete_whole_resources(table: ResourceTable, exclusions: Exclusions) -> List[str]:
    """Drop every profile flagged ``wholeResourceExcluded``; returns the names not found."""
    original_count = len(table)
    deleted: List[str] = []
    not_found: List[str] = []

    for name, exclusion in exclusions.items():
        if not (exclusion and exclusion.get("wholeResourceExcluded")):
            continue
        if name in table:
            del table[name]
            deleted.append(name)
        else:
            not_found.append(name)

    logger.info(
        f"During PioSmallLookUpTable generation {len(deleted)} resources out of "
        f"{original_count} were deleted"
    )
    logger.info(f"{len(not_found)} resources were not found and couldn't be deleted")
    return not_found


def cut_excluded_paths(table: ResourceTable, exclusions: Exclusions) -> List[str]:
    """Remove every path containing an excluded path string.

    Returns:
        The excluded paths that matched nothing
    """
    deleted_count = 0
    not_found: List[str] = []

    for name, exclusion in exclusions.items():
        if not _has_excluded_paths(exclusion):
            continue
        entry = table.get(name)
        if entry is None:
            logger.warning(f"Profile {name} from the exclusions is not in the lookup table", extra={"profile": name})
            not_found.extend(exclusion["excludedPaths"])
            continue

        for path_to_delete in exclusion["excludedPaths"]:
            matches = [path for path in entry.paths if path_to_delete in path]
            for path in matches:
                del entry.paths[path]
            deleted_count += len(matches)
            if not matches:
                not_found.append(path_to_delete)

    logger.info(f"During PioSmallLookUpTable generation {deleted_count} paths were deleted")
    if not_found:
        logger.info(f"{len(not_found)} paths were not found and couldn't be deleted: {not_found}")
    return not_found


def generate_pio_small_table(table: ResourceTable, exclusions: Exclusions) -> ResourceTable:
    """Return a reduced copy of the path table; the input is left untouched."""
    small = copy.deepcopy(table)
    delete_whole_resources(small, exclusions)
    cut_excluded_paths(small, exclusions)
    return small


def generate_exclusions_translation_list(exclusions: Exclusions) -> Exclusions:
    """Keep only excluded paths with a translation, keyed without slice qualifiers.

    ``Patient.extension:birthName.value[x]`` becomes ``Patient.extension.value[x]``.
    Profiles excluded as a whole are carried over unchanged.
    """
    translation_list = copy.deepcopy(exclusions)
    for exclusion in translation_list.values():
        if not _has_excluded_paths(exclusion):
            continue
        exclusion["excludedPaths"] = {
            SLICE_QUALIFIER_PATTERN.sub("", path): translation
            for path, translation in exclusion["excludedPaths"].items()
            if translation
        }
    return translation_list
