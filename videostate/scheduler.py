"""
APScheduler-based scheduler for periodic progress sync.

One in-memory AsyncIOScheduler per process. Jobs are tied to the playback
of a single page and are never persisted.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


_scheduler: AsyncIOScheduler | None = None


def init_scheduler() -> AsyncIOScheduler:
    """
    Initialize and start the scheduler.

    Must be called from a running event loop. Calling it again returns
    the already-running instance.
    """
    global _scheduler

    if _scheduler is not None:
        return _scheduler

    _scheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,  # Combine missed ticks into one
            "max_instances": 1,  # Never overlap two syncs for the same job
        },
    )
    _scheduler.start()
    logger.info("Progress sync scheduler started")
    return _scheduler


def get_scheduler() -> AsyncIOScheduler | None:
    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler. Pending ticks are dropped."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Progress sync scheduler stopped")
