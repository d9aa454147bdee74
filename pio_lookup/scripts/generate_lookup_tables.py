#!/usr/bin/env python3
"""Generate the PIO lookup tables.

Usage:
    # All four artifacts into the default data directory
    python -m pio_lookup.scripts.generate_lookup_tables

    # Custom output and cache folders, verbose console
    pio-lookup-generate --output-dir out --cache-dir .cache --log-level DEBUG

    # Skip the PIO-Small reduction
    pio-lookup-generate --no-small
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Environment overrides must be in place before the config module is imported
load_dotenv()

from pio_lookup.generators.config import CACHE_DIR, LOG_DIR, OUTPUT_DIR, PACKAGES_DIR  # noqa: E402
from pio_lookup.generators.logging import setup_run_logging  # noqa: E402
from pio_lookup.generators.pipeline import run_pipeline, write_artifacts  # noqa: E402
from pio_lookup.generators.resource_table import SnapshotFetchError  # noqa: E402

logger = logging.getLogger("pio_lookup.scripts.generate_lookup_tables")


def main():
    """Main entry point for the lookup table generator CLI."""
    parser = argparse.ArgumentParser(
        description="Generate the PIO resource, PIO-Small and ValueSet lookup tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=str(OUTPUT_DIR),
        help=f"Directory the JSON tables are written to (default: {OUTPUT_DIR})",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=str(CACHE_DIR),
        help=f"Cache folder for downloaded terminology data (default: {CACHE_DIR})",
    )
    parser.add_argument(
        "--packages-dir",
        type=str,
        default=str(PACKAGES_DIR),
        help=f"Folder with the installed FHIR packages (default: {PACKAGES_DIR})",
    )
    parser.add_argument(
        "--exclusions",
        type=str,
        default=None,
        help="PIO-Small exclusions document (default: bundled PioSmallExclusions.json)",
    )
    parser.add_argument(
        "--no-small",
        action="store_true",
        help="Skip the PIO-Small table and resolve ValueSets for the full table",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=str(LOG_DIR),
        help=f"Root folder for per-run logs (default: {LOG_DIR})",
    )

    args = parser.parse_args()

    run_id = setup_run_logging(Path(args.log_dir), level=args.log_level)
    logger.info(f"Run {run_id} started")

    packages_dir = Path(args.packages_dir)
    if not packages_dir.exists():
        logger.error(f"Packages directory not found: {packages_dir}")
        sys.exit(1)

    try:
        result = asyncio.run(
            run_pipeline(
                cache_dir=Path(args.cache_dir),
                packages_dir=packages_dir,
                exclusions_path=Path(args.exclusions) if args.exclusions else None,
                small=not args.no_small,
            )
        )
    except SnapshotFetchError as e:
        logger.error(f"Generation aborted: {e}")
        sys.exit(1)

    written = write_artifacts(result, Path(args.output_dir), show_progress=True)
    for file_name, path in written.items():
        logger.info(f"Wrote {file_name} to {path}")
    logger.info(
        f"Done: {len(result.resource_table)} profiles, {len(result.value_set_table)} ValueSets, "
        f"{result.stats.percentage:.2f}% German coverage"
    )


if __name__ == "__main__":
    main()
