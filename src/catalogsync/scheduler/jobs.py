"""
APScheduler jobs for background imports.

Two kinds of jobs run on one AsyncIOScheduler:
  - import_watchdog: interval job that fails RUNNING (or never claimed) runs
    with no recent progress
  - import-continue-<run_id>: one-shot jobs that run the next execution context
    of a checkpointed (PARTIAL) import

The scheduler runs inside the API process (started in the app lifespan).
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from catalogsync.config import get_settings
from catalogsync.sync.continuation import SchedulerContinuationQueue

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine passed to the jobs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _import_watchdog,
        trigger="interval",
        minutes=settings.watchdog_interval_minutes,
        id="import_watchdog",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


def build_continuation_queue(scheduler: AsyncIOScheduler, engine) -> SchedulerContinuationQueue:
    """Continuations scheduled on `scheduler`, each running _continue_import."""
    return SchedulerContinuationQueue(
        scheduler, _continue_import, engine=engine, scheduler=scheduler
    )


async def _continue_import(run_id: int, engine, scheduler: AsyncIOScheduler) -> None:
    """One execution context of a checkpointed import."""
    from catalogsync.sync.import_service import CatalogImportService

    service = CatalogImportService(
        engine=engine, queue=build_continuation_queue(scheduler, engine)
    )
    try:
        run = await service.continue_run(run_id)
        logger.info(
            "Import run %s context done: %s (processed=%d)",
            run_id, run.status.value, run.processed_count,
        )
    except Exception as exc:
        logger.error("Continuation of import run %s failed: %s", run_id, exc)


async def _import_watchdog(engine) -> None:
    """Fail RUNNING or unclaimed imports that have not checkpointed within the threshold."""
    from catalogsync.sync.ledger import RunLedger
    from catalogsync.sync.watchdog import fail_stale_runs

    settings = get_settings()
    logger.debug("Import watchdog at %s", datetime.utcnow().isoformat())
    ledger = RunLedger(engine, error_cap=settings.error_log_cap)
    try:
        failed = fail_stale_runs(ledger, settings.watchdog_threshold_minutes)
    except Exception as exc:
        logger.error("Import watchdog failed: %s", exc)
        return
    if failed:
        logger.warning("Watchdog failed %d stale import run(s): %s", len(failed), failed)
