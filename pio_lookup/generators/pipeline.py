"""Orchestration of the four lookup-table artifacts.

Stages:
1. Resource table from the profile package (snapshots fetched if missing)
2. PIO-Small table from the exclusions document
3. ValueSet table from the PIO-Small table, resolved with the German
   preferred terms once the three translation sources are fetched, then
   overlaid with the remaining sources
4. Translation list of excluded paths
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from tqdm import tqdm

from .cache import FileCache
from .config import (
    EXCLUDED_PATHS_TRANSLATION_FILE,
    OUTPUT_DIR,
    PACKAGES_DIR,
    PIO_SMALL_TABLE_FILE,
    PROFILE_PACKAGE,
    RESOURCE_TABLE_FILE,
    VALUE_SET_TABLE_FILE,
)
from .fetcher import TerminologyClient
from .helpers import write_json_file
from .models import (
    ResourceTable,
    TranslationStats,
    ValueSetTable,
    resource_table_to_dict,
    value_set_table_to_dict,
)
from .pio_small import (
    Exclusions,
    generate_exclusions_translation_list,
    generate_pio_small_table,
    load_exclusions,
)
from .resource_table import generate_resource_table
from .translations import (
    apply_translation_overlay,
    count_german_translations,
    fetch_translation_sources,
)
from .valueset_table import (
    build_terminology_index,
    default_terminology_folders,
    generate_value_set_table,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one run produces, still in memory."""

    resource_table: ResourceTable
    value_set_table: ValueSetTable
    excluded_paths_translations: Exclusions
    pio_small_table: Optional[ResourceTable] = None
    stats: TranslationStats = field(default_factory=TranslationStats)


async def run_pipeline(
    cache_dir: Optional[Path] = None,
    packages_dir: Optional[Path] = None,
    profile_dir: Optional[Path] = None,
    exclusions_path: Optional[Path] = None,
    small: bool = True,
    client: Optional[TerminologyClient] = None,
) -> PipelineResult:
    """Generate all lookup tables.

    Args:
        cache_dir: Cache folder (defaults to the configured one)
        packages_dir: Root folder of the installed FHIR packages
        profile_dir: Folder with the profile StructureDefinitions
        exclusions_path: PIO-Small exclusions document
        small: Build the reduced table and derive the ValueSet table from it
        client: Terminology client; one is created (and closed) if omitted

    Returns:
        The generated tables

    Raises:
        SnapshotFetchError: If a profile's snapshot can't be downloaded
    """
    cache = FileCache(cache_dir)
    owns_client = client is None
    client = client or TerminologyClient()

    try:
        logger.info("Generating ResourceLookUpTable")
        profile_dir = profile_dir or (packages_dir or PACKAGES_DIR) / PROFILE_PACKAGE
        resource_table = await generate_resource_table(client, cache, package_dir=profile_dir)

        exclusions = load_exclusions(exclusions_path)
        pio_small_table = None
        source_table = resource_table
        if small:
            logger.info("Generating PioSmallLookUpTable")
            pio_small_table = generate_pio_small_table(resource_table, exclusions)
            source_table = pio_small_table

        sources = await fetch_translation_sources(client, cache)
    finally:
        if owns_client:
            await client.aclose()

    logger.info("Generating ValueSetLookUpTable with German translations")
    index = build_terminology_index(default_terminology_folders(packages_dir))
    value_set_table, resolver_stats = generate_value_set_table(
        source_table, index, sources.preferred_terms
    )
    apply_translation_overlay(value_set_table, sources)
    stats = count_german_translations(value_set_table)
    logger.info(
        f"Amount of ValueSets: {len(value_set_table)} "
        f"({resolver_stats.german}/{resolver_stats.total} enumerated codes translated inline)"
    )

    return PipelineResult(
        resource_table=resource_table,
        pio_small_table=pio_small_table,
        value_set_table=value_set_table,
        excluded_paths_translations=generate_exclusions_translation_list(exclusions),
        stats=stats,
    )


def write_artifacts(
    result: PipelineResult, output_dir: Optional[Path] = None, show_progress: bool = False
) -> Dict[str, Path]:
    """Serialize the generated tables as JSON documents.

    Returns:
        Mapping of file name to written path
    """
    output_dir = Path(output_dir) if output_dir is not None else OUTPUT_DIR
    artifacts: Dict[str, Any] = {
        RESOURCE_TABLE_FILE: resource_table_to_dict(result.resource_table),
        VALUE_SET_TABLE_FILE: value_set_table_to_dict(result.value_set_table),
        EXCLUDED_PATHS_TRANSLATION_FILE: result.excluded_paths_translations,
    }
    if result.pio_small_table is not None:
        artifacts[PIO_SMALL_TABLE_FILE] = resource_table_to_dict(result.pio_small_table)

    written: Dict[str, Path] = {}
    for file_name, data in tqdm(artifacts.items(), desc="Writing", disable=not show_progress):
        path = output_dir / file_name
        write_json_file(path, data)
        written[file_name] = path
        logger.debug(f"Finished generating {file_name}")
    return written
