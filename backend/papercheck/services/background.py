"""
Background worker - periodic gradebook reconciliation.
"""

import asyncio

from papercheck.config import logger, GRADE_SYNC_INTERVAL_SECONDS
from papercheck.services.gradebook import sync_grades_from_evaluations


async def worker_loop(db, interval: float = GRADE_SYNC_INTERVAL_SECONDS, max_passes: int = None):
    """
    Sync grades from completed evaluations every `interval` seconds.
    A failed pass is logged and the loop keeps going.
    """
    logger.info(f"🔄 Task worker loop started (grade sync every {interval}s)")
    passes = 0
    while max_passes is None or passes < max_passes:
        try:
            await sync_grades_from_evaluations(db)
        except Exception as e:
            logger.error(f"Grade sync pass failed: {e}", exc_info=True)
        passes += 1
        if max_passes is None or passes < max_passes:
            await asyncio.sleep(interval)


async def run_background_worker(db=None):
    """Integrated background worker, started from the app lifespan."""
    if db is None:
        from papercheck.database import db
    logger.info("🔄 Background worker started")
    logger.info("=" * 60)
    try:
        await worker_loop(db)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Background worker error: {e}", exc_info=True)
