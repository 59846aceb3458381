"""APScheduler setup for the continuation sweeper."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.services.pipeline import get_pipeline, resume_stranded_continuations

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def sweep_continuations():
    """Pick up continuation runs whose dispatch got lost."""
    settings = get_settings()
    try:
        await resume_stranded_continuations(get_pipeline(), settings.continuation_stale_seconds)
    except Exception as e:
        logger.error(f"Continuation sweep failed: {e}")


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_continuations,
        IntervalTrigger(seconds=settings.continuation_sweep_seconds),
        id="continuation_sweep",
        name="Resume stranded sync continuations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - continuation sweep every {settings.continuation_sweep_seconds}s")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
