"""
Command-line entrypoint.

Usage:
    python -m catalogsync add-integration           # store an encrypted access token
    python -m catalogsync import INTEGRATION_ID     # run an import to completion
    python -m catalogsync resume RUN_ID             # continue a PARTIAL run
    python -m catalogsync watchdog                  # fail stalled RUNNING runs once
    python -m catalogsync test-connection INTEGRATION_ID
    uvicorn catalogsync.api.main:app --host 0.0.0.0 --port 8000  # starts API + scheduler

Imports run here drain their continuations in-process instead of scheduling
them, so one command walks the whole catalog one time budget at a time.
"""
import argparse
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build_service():
    from catalogsync.db.engine import get_engine
    from catalogsync.sync.continuation import LocalContinuationQueue
    from catalogsync.sync.import_service import CatalogImportService

    queue = LocalContinuationQueue()
    return CatalogImportService(engine=get_engine(), queue=queue), queue


def _print_run(run) -> None:
    print(
        f"Run {run.id}: {run.status.value} "
        f"processed={run.processed_count} created={run.created_count} "
        f"updated={run.updated_count} failed={run.failed_count} cursor={run.cursor}"
    )


async def _import(integration_id: int) -> int:
    from catalogsync.errors import ConfigurationError, RunInProgressError

    service, queue = _build_service()
    try:
        run = await service.start(integration_id)
    except RunInProgressError as exc:
        logger.error("%s", exc)
        return 1
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1

    contexts = await queue.drain(service.continue_run)
    run = service.ledger.get(run.id)
    logger.info("Import run %s used %d continuation(s)", run.id, contexts)
    _print_run(run)
    return 0 if run.status.value == "SUCCESS" else 1


async def _resume(run_id: int) -> int:
    from catalogsync.errors import RunNotFoundError, RunStateError

    service, queue = _build_service()
    try:
        await service.resume(run_id)
    except (RunNotFoundError, RunStateError) as exc:
        logger.error("%s", exc)
        return 1

    await queue.drain(service.continue_run)
    run = service.ledger.get(run_id)
    _print_run(run)
    return 0 if run.status.value == "SUCCESS" else 1


def _watchdog() -> int:
    from catalogsync.config import get_settings
    from catalogsync.db.engine import get_engine
    from catalogsync.sync.ledger import RunLedger
    from catalogsync.sync.watchdog import fail_stale_runs

    failed = fail_stale_runs(
        RunLedger(get_engine()), get_settings().watchdog_threshold_minutes
    )
    print(f"Failed {len(failed)} stalled run(s): {failed}")
    return 0


async def _test_connection(integration_id: int) -> int:
    service, _ = _build_service()
    result = await service.test_connection(integration_id)
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok") else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="catalogsync", description="Provider catalog import")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("add-integration", help="Register an integration and store its token")

    p_import = sub.add_parser("import", help="Start an import and run it to completion")
    p_import.add_argument("integration_id", type=int)

    p_resume = sub.add_parser("resume", help="Resume a PARTIAL import run")
    p_resume.add_argument("run_id", type=int)

    sub.add_parser("watchdog", help="Fail RUNNING imports that stopped making progress")

    p_test = sub.add_parser("test-connection", help="Check stored credentials")
    p_test.add_argument("integration_id", type=int)

    args = parser.parse_args(argv)

    if args.command == "add-integration":
        from catalogsync.scripts.add_integration import run_add_integration
        run_add_integration()
        return 0
    if args.command == "import":
        return asyncio.run(_import(args.integration_id))
    if args.command == "resume":
        return asyncio.run(_resume(args.run_id))
    if args.command == "watchdog":
        return _watchdog()
    return asyncio.run(_test_connection(args.integration_id))


if __name__ == "__main__":
    sys.exit(main())
