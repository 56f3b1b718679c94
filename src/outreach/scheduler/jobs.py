"""
APScheduler jobs for background sync maintenance.

The recovery sweep runs every few minutes and re-starts sync chains whose
heartbeat went quiet (a crashed batch or a dropped continuation).

The scheduler runs inside the process started by `python -m outreach`.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from outreach.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine, continuations=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to scan for stuck connections.
        continuations: ContinuationScheduler used to resume stuck chains.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    if settings.recovery_enabled:
        scheduler.add_job(
            _recover_stuck_syncs,
            trigger="interval",
            minutes=settings.recovery_interval_minutes,
            id="stuck_sync_recovery",
            replace_existing=True,
            kwargs={"engine": engine, "continuations": continuations},
        )

    return scheduler


async def _recover_stuck_syncs(engine, continuations=None) -> None:
    """
    Interval job: resume or fail stuck sync chains.

    Idempotent — a connection that recovered since the last sweep is no
    longer stuck and is left alone.
    """
    from outreach.sync.recovery import recover

    logger.info("Stuck-sync sweep starting at %s", datetime.utcnow().isoformat())

    try:
        result = recover(engine, continuations)
        if result["found"]:
            logger.info(
                "Stuck-sync sweep: %d found, %d resumed, %d failed",
                result["found"], result["resumed"], result["failed"],
            )
    except Exception as exc:
        logger.error("Stuck-sync sweep failed: %s", exc)
