"""
PIO Lookup Table Generators

Builds the lookup tables the PIO editor reads: a path table per KBV MIO
Ueberleitungsbogen profile, its reduced PIO-Small variant, and a flat
ValueSet table with German display terms overlaid from the SNOMED CT
German edition, curated concept maps and reference sets.
"""

from .cache import FileCache
from .fetcher import RateLimiter, TerminologyClient
from .helpers import capitalize, normalize_element_path
from .models import (
    Concept,
    PathConstraint,
    ResourceEntry,
    ResourceMeta,
    TranslationStats,
)
from .pio_small import (
    generate_exclusions_translation_list,
    generate_pio_small_table,
    load_exclusions,
)
from .pipeline import PipelineResult, run_pipeline, write_artifacts
from .resource_table import SnapshotFetchError, generate_resource_table
from .translations import apply_translation_overlay, count_german_translations
from .valueset_table import build_terminology_index, generate_value_set_table

__all__ = [
    "FileCache",
    "RateLimiter",
    "TerminologyClient",
    "capitalize",
    "normalize_element_path",
    "Concept",
    "PathConstraint",
    "ResourceEntry",
    "ResourceMeta",
    "TranslationStats",
    "generate_exclusions_translation_list",
    "generate_pio_small_table",
    "load_exclusions",
    "PipelineResult",
    "run_pipeline",
    "write_artifacts",
    "SnapshotFetchError",
    "generate_resource_table",
    "apply_translation_overlay",
    "count_german_translations",
    "build_terminology_index",
    "generate_value_set_table",
]
