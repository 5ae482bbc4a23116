"""
Card Catalog Sync — One-Shot Import Script

Runs a single import for one source and prints the summary. Useful for the
initial catalog load and for manual re-syncs outside the scheduler.

Usage:
    python scripts/import_cards.py --source mtg
    python scripts/import_cards.py --source mtg --batch-size 500 --workers 4 --no-cache

Exit code is 1 when the run fails, or when it reports errors and no record
was processed successfully; otherwise 0.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cardsync.config import settings
from cardsync.main import _configure_logging, create_db_engine
from cardsync.pipeline.importer import ImportResult, run_import
from cardsync.pipeline.sources import build_sources

MAX_ERRORS_SHOWN = 20


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Import one card dataset into the catalog.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/import_cards.py --source mtg
  python scripts/import_cards.py --source pokemon --workers 4
  python scripts/import_cards.py --source mtg --no-cache
""",
    )
    parser.add_argument(
        "--source",
        type=str,
        required=True,
        choices=sorted(build_sources()),
        help="Data source id to import.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.IMPORT_BATCH_SIZE,
        help=f"Records per batch (default: {settings.IMPORT_BATCH_SIZE}).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=settings.IMPORT_WORKERS,
        help=f"Concurrent batch workers (default: {settings.IMPORT_WORKERS}).",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore any cached dataset file and download fresh.",
    )
    return parser.parse_args(argv)


def exit_code(result: ImportResult | None) -> int:
    """0 on success; 1 if the run failed or nothing was processed amid errors."""
    if result is None:
        return 1
    if result.errors and result.processed == 0:
        return 1
    return 0


def print_summary(source_id: str, result: ImportResult) -> None:
    print(f"Import finished for source={source_id}")
    print(f"  total records      = {result.total}")
    print(f"  processed          = {result.processed}")
    print(f"  created            = {result.created}")
    print(f"  updated            = {result.updated}")
    print(f"  healed extensions  = {result.healed}")
    print(f"  skipped            = {result.skipped}")
    print(f"  errors             = {len(result.errors)}")
    for message in result.errors[:MAX_ERRORS_SHOWN]:
        print(f"    - {message}")
    if len(result.errors) > MAX_ERRORS_SHOWN:
        print(f"    ... {len(result.errors) - MAX_ERRORS_SHOWN} more")


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(log_level=settings.LOG_LEVEL)

    engine, session_factory = create_db_engine()
    result: ImportResult | None = None
    try:
        result = await run_import(
            args.source,
            session_factory,
            batch_size=args.batch_size,
            workers=args.workers,
            use_cache=not args.no_cache,
        )
        print_summary(args.source, result)
    except Exception as e:
        print(f"Import failed: {type(e).__name__}: {e}", file=sys.stderr)
    finally:
        await engine.dispose()

    return exit_code(result)


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
