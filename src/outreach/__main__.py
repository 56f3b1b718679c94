"""
Main entrypoint: CLI sync driver and the recovery scheduler process.

FastAPI runs separately under uvicorn (for the trigger / status endpoints).

Usage:
    python -m outreach sync <tenant> <platform> [--reset]   # run a chain to completion
    python -m outreach                                       # starts the recovery scheduler
    uvicorn outreach.api.main:app --host 0.0.0.0 --port 8000 # starts API
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_sync(tenant_id: str, platform: str, reset: bool) -> int:
    from outreach.config import get_settings
    from outreach.db.engine import get_engine
    from outreach.sync.continuation import ContinuationScheduler, LocalTransport
    from outreach.sync.runner import NoActiveConnectionError, RunOptions, SyncRunner
    from outreach.sync.status import get_status
    from sqlmodel import Session

    settings = get_settings()
    engine = get_engine()

    # The CLI always chains in-process so it can wait for the last batch
    transport = LocalTransport(delay=settings.continuation_delay_seconds)
    continuations = ContinuationScheduler(transport)
    runner = SyncRunner(engine, continuations, settings)

    try:
        result = await runner.run(tenant_id, platform, RunOptions(reset=reset))
    except NoActiveConnectionError as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Batch 1: %s (%s)", result.status, result.message)

    await continuations.drain()

    with Session(engine) as s:
        view = get_status(s, tenant_id, platform)
    if view is None:
        return 1
    logger.info(
        "Final status %s at %.0f%%: %s",
        view.sync_status, view.percent, view.message,
    )
    return 0 if view.sync_status == "success" else 2


async def _run_scheduler() -> None:
    from outreach.config import get_settings
    from outreach.db.engine import get_engine
    from outreach.scheduler.jobs import build_scheduler
    from outreach.sync.continuation import build_scheduler_from_settings
    from outreach.sync.runner import SyncRunner

    settings = get_settings()
    engine = get_engine()

    continuations = build_scheduler_from_settings(settings)
    # Binds itself to a local transport so resumed chains run in this process
    SyncRunner(engine, continuations, settings)

    scheduler = build_scheduler(engine, continuations)
    scheduler.start()
    logger.info(
        "Scheduler started (stuck-sync sweep every %d min, continuations via %s)",
        settings.recovery_interval_minutes,
        settings.continuation_mode,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def _sync_command(argv) -> int:
    parser = argparse.ArgumentParser(prog="python -m outreach sync", description="Run a sync chain to completion")
    parser.add_argument("tenant_id")
    parser.add_argument("platform", choices=["smartlead", "replyio", "phoneburner"])
    parser.add_argument("--reset", action="store_true", help="Purge synced data and start over")
    args = parser.parse_args(argv)
    return asyncio.run(_run_sync(args.tenant_id, args.platform, args.reset))


if __name__ == "__main__":
    # Dispatch on first argument: `python -m outreach sync ...` or just `python -m outreach`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        sys.exit(_sync_command(sys.argv[2:]))
    else:
        asyncio.run(_run_scheduler())
