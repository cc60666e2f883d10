"""
Repair action item ordinals in every partition (one list, or one owner's unlisted items).

Duplicates are renumbered by creation time, gaps are compacted, and each
repaired partition is logged. --dry-run reports without committing.

Run from apps/api: python scripts/fix_action_item_ordinals.py [--dry-run]
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logger = logging.getLogger(__name__)

from bizcoach.db.session import async_session, engine
from bizcoach.services.action_items.ordinals import normalize_all


async def fix_action_item_ordinals(dry_run: bool) -> int:
    async with async_session() as session:
        conflicts = await normalize_all(session)
        for conflict in conflicts:
            logger.info("Repaired %s", conflict)
        if dry_run:
            await session.rollback()
            logger.info("Dry run: %d partition(s) would be repaired", len(conflicts))
        else:
            await session.commit()
            logger.info("Repaired %d partition(s)", len(conflicts))
    await engine.dispose()
    return len(conflicts)


def main():
    parser = argparse.ArgumentParser(description="Renumber action item ordinals to 0..n-1 in every partition.")
    parser.add_argument("--dry-run", action="store_true", help="Report conflicts without writing fixes")
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(fix_action_item_ordinals(args.dry_run))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(0)


if __name__ == "__main__":
    main()
