#!/usr/bin/env python3
"""
Fix drifted venue names for one city.

Renames venues whose display name has drifted from the geocoder's name,
unless the new name would collide with a venue a few meters away. Prints
the JSON summary on stdout; progress goes to the log on stderr.

Usage:
    PYTHONPATH=. python3 scripts/fix_venue_names.py <city_id> [--severity severe|moderate|all] [--dry-run] [--chunk-size N]
"""

import argparse
import asyncio
import json
import logging
import sys

logger = logging.getLogger("fix_venue_names")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fix venue names that drifted from their geocoded name.")
    parser.add_argument("city_id", type=int, help="city whose venues are examined")
    parser.add_argument(
        "--severity",
        choices=["severe", "moderate", "all"],
        default="severe",
        help="severe: only severe; moderate: moderate and severe; all: every flagged venue",
    )
    parser.add_argument("--dry-run", action="store_true", help="report without renaming")
    parser.add_argument("--chunk-size", type=int, default=None, help="venues per transaction")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    import asyncpg

    from services.dedup.config import settings
    from services.dedup.jobs.name_fix import run_name_fix
    from services.dedup.resolution.name_quality import SeverityFilter

    chunk_size = args.chunk_size or settings.name_fix_chunk_size
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    logger.info("Pool created (min=%d, max=%d)", settings.db_pool_min_size, settings.db_pool_max_size)

    try:
        summary = await run_name_fix(
            pool,
            args.city_id,
            SeverityFilter(args.severity),
            args.dry_run,
            chunk_size=chunk_size,
        )
    finally:
        await pool.close()

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 1 if summary.failed else 0


if __name__ == "__main__":
    from services.dedup.config import settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    sys.exit(asyncio.run(run(parse_args(sys.argv[1:]))))
