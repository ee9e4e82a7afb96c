"""
CatalogImportService drives a catalog import across execution contexts.

Flow for one execution context (continue_run):
  1. Load the run; if it is already terminal, return it untouched. Otherwise
     claim it (PENDING/PARTIAL to RUNNING in one conditional UPDATE); a run
     another context already holds is returned untouched as well
  2. Resolve credentials + catalog mode, probe the merchant identity
     (credential/access errors fail the run; they are not retried)
  3. Loop: fetch page → resolve variations → reconcile each pair in order →
     checkpoint {cursor, counters, PARTIAL} after every page
  4. Before each fetch, check the time budget. When it is spent and a cursor
     remains, stay PARTIAL, enqueue a continuation and return. A run failed
     meanwhile (watchdog) stops the loop before the next fetch
  5. A page without a cursor ends the run: SUCCESS, or FAILED when pairs
     failed and nothing was created or updated

Trigger modes:
  start(integration_id)  admission + first execution context
  resume(run_id)         PARTIAL runs only; enqueues a continuation
  continue_run(run_id)   one execution context (what continuations call)

Any unexpected exception fails the run (code INTERNAL) and is re-raised.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlmodel import Session

from catalogsync.config import Settings, get_settings
from catalogsync.errors import (
    CatalogFetchError,
    ConfigurationError,
    CredentialsError,
    ErrorCode,
    ProviderAuthError,
    ProviderHTTPError,
    RetryBudgetExhausted,
    RunStateError,
)
from catalogsync.models.import_run import ImportRun, RunStatus
from catalogsync.models.integration import Integration
from catalogsync.provider.client import CatalogProviderClient
from catalogsync.provider.credentials import CredentialStore, ProviderCredentials
from catalogsync.provider.fetcher import build_page_fetcher
from catalogsync.provider.http import BackoffHTTPClient
from catalogsync.provider.variations import VariationResolver
from catalogsync.sync.continuation import ContinuationQueue
from catalogsync.sync.ledger import RunCounters, RunLedger
from catalogsync.sync.pairs import PairProcessor

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderCredentials, Optional[float]], CatalogProviderClient]


class CatalogImportService:
    """Runs provider → local catalog imports under a per-context time budget."""

    def __init__(
        self,
        engine,
        queue: ContinuationQueue,
        *,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialStore] = None,
        ledger: Optional[RunLedger] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            queue: Where continuations are handed off.
            client_factory: Builds a provider client from credentials and a
                monotonic deadline. Defaults to BackoffHTTPClient over httpx.
            clock / sleep / transport: Injected for tests.
        """
        self.engine = engine
        self.queue = queue
        self.settings = settings or get_settings()
        self.credentials = credentials or CredentialStore(engine, self.settings)
        self.ledger = ledger or RunLedger(engine, error_cap=self.settings.error_log_cap)
        self._client_factory = client_factory or self._build_client
        self._clock = clock
        self._sleep = sleep
        self._transport = transport

    # ── Trigger boundary ──────────────────────────────────────────────────────

    def admit(self, integration_id: int) -> ImportRun:
        """Create a PENDING run, or raise RunInProgressError."""
        return self.ledger.open_run(integration_id)

    async def start(self, integration_id: int) -> ImportRun:
        """Admit a new run and execute its first context inline."""
        run = self.admit(integration_id)
        return await self.continue_run(run.id)

    async def resume(self, run_id: int) -> ImportRun:
        """
        Re-enqueue a checkpointed run.

        Raises:
            RunNotFoundError: unknown run id.
            RunStateError: the run is not PARTIAL.
        """
        run = self.ledger.get(run_id)
        if run.status != RunStatus.PARTIAL:
            raise RunStateError(f"Cannot resume import run {run_id} in status {run.status.value}")
        await self.queue.enqueue(run_id)
        return run

    async def continue_run(self, run_id: int) -> ImportRun:
        """Execute one context of the import loop for an existing run."""
        run = self.ledger.get(run_id)
        if run.is_terminal:
            logger.info("Import run %s already %s; nothing to do", run_id, run.status.value)
            return run

        started = self._clock()
        deadline = (
            started
            + self.settings.import_max_seconds
            - self.settings.import_safety_margin_seconds
        )
        claimed = self.ledger.claim(run_id)
        if claimed is None:
            current = self.ledger.get(run_id)
            logger.warning(
                "Import run %s is %s and held or finished elsewhere; not continuing",
                run_id, current.status.value,
            )
            return current
        run = claimed

        try:
            return await self._run_context(run, deadline)
        except Exception as exc:
            logger.exception("Import run %s crashed", run_id)
            current = self.ledger.get(run_id)
            if not current.is_terminal:
                self.ledger.fail(run_id, ErrorCode.INTERNAL, str(exc) or type(exc).__name__)
            raise

    # ── Connection check ──────────────────────────────────────────────────────

    async def test_connection(self, integration_id: int) -> Dict[str, Any]:
        """Resolve credentials and list the merchant's locations."""
        try:
            creds = self.credentials.get(integration_id)
        except CredentialsError as exc:
            self._record_connection(integration_id, error=str(exc))
            return {"ok": False, "error": str(exc)}

        client = self._client_factory(creds, self._clock() + self.settings.import_max_seconds)
        try:
            locations = await client.list_locations()
        except (ProviderHTTPError, RetryBudgetExhausted) as exc:
            message = f"{exc} (environment {creds.environment}, {creds.base_url})"
            self._record_connection(integration_id, error=message)
            return {
                "ok": False,
                "error": message,
                "environment": creds.environment,
                "base_url": creds.base_url,
            }
        finally:
            await client.aclose()

        self._record_connection(integration_id, error=None)
        logger.info("Connection ok for integration %s: %d locations", integration_id, len(locations))
        return {
            "ok": True,
            "environment": creds.environment,
            "base_url": creds.base_url,
            "masked_token": creds.masked_token,
            "locations": [
                {"id": loc.get("id"), "name": loc.get("name"), "status": loc.get("status")}
                for loc in locations
            ],
        }

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _build_client(
        self, creds: ProviderCredentials, deadline: Optional[float]
    ) -> CatalogProviderClient:
        http = BackoffHTTPClient(
            creds.base_url,
            creds.access_token,
            api_version=self.settings.provider_api_version,
            timeout=self.settings.http_timeout_seconds,
            backoff_base=self.settings.backoff_base_seconds,
            backoff_cap=self.settings.backoff_cap_seconds,
            deadline=deadline,
            clock=self._clock,
            sleep=self._sleep,
            transport=self._transport,
        )
        return CatalogProviderClient(http)

    async def _run_context(self, run: ImportRun, deadline: float) -> ImportRun:
        counters = RunCounters.from_run(run)

        with Session(self.engine) as s:
            integration = s.get(Integration, run.integration_id)
        if integration is None:
            return self.ledger.fail(
                run.id, ErrorCode.CREDENTIALS, f"Integration {run.integration_id} not found"
            )

        try:
            creds = self.credentials.get(integration.id)
        except CredentialsError as exc:
            return self.ledger.fail(run.id, ErrorCode.CREDENTIALS, str(exc))

        client = self._client_factory(creds, deadline)
        try:
            try:
                fetcher = build_page_fetcher(
                    integration.catalog_mode, client, self.settings.import_page_size
                )
            except ConfigurationError as exc:
                return self.ledger.fail(run.id, ErrorCode.CATALOG_ACCESS, str(exc))

            try:
                merchant = await client.retrieve_merchant()
            except ProviderAuthError as exc:
                return self.ledger.fail(run.id, ErrorCode.CREDENTIALS, str(exc))
            except ProviderHTTPError as exc:
                return self.ledger.fail(run.id, ErrorCode.CATALOG_ACCESS, str(exc))
            except RetryBudgetExhausted:
                return await self._hand_off(run.id, run.cursor, counters, [])
            logger.info(
                "Import run %s: merchant %s (%s) @ %s, mode=%s, cursor=%s",
                run.id, merchant.get("merchant_id"), merchant.get("business_name") or "?",
                creds.base_url, integration.catalog_mode, run.cursor,
            )

            resolver = VariationResolver(client, batch_size=self.settings.variation_batch_size)
            processor = PairProcessor(self.engine, integration.id, integration.source)
            return await self._page_loop(run, deadline, counters, fetcher, resolver, processor)
        finally:
            await client.aclose()

    async def _page_loop(self, run, deadline, counters, fetcher, resolver, processor) -> ImportRun:
        cursor = run.cursor
        status = run.status

        while True:
            stopped = self._stopped(run.id, cursor)
            if stopped is not None:
                return stopped

            if cursor is not None and self._clock() >= deadline:
                logger.info("Import run %s: time budget spent at cursor %s", run.id, cursor)
                return await self._hand_off(run.id, cursor, counters, [])

            if status == RunStatus.PARTIAL:
                if self.ledger.claim(run.id) is None:
                    return self.ledger.get(run.id)
                status = RunStatus.RUNNING

            try:
                page = await fetcher.fetch_page(cursor)
                variations = await resolver.resolve(page)
            except RetryBudgetExhausted:
                return await self._hand_off(run.id, cursor, counters, [])
            except CatalogFetchError as exc:
                return self.ledger.fail(
                    run.id,
                    ErrorCode.FETCH_FAILED,
                    str(exc),
                    counters=counters,
                    context={"kind": exc.kind, "cursor": cursor},
                )

            stopped = self._stopped(run.id, cursor)
            if stopped is not None:
                return stopped

            page_errors: List[Dict[str, Any]] = []
            for item in page.items:
                for variation in variations.get(item.external_id) or [None]:
                    outcome = processor.process(item, variation)
                    counters.processed += 1
                    counters.created += int(outcome.created)
                    counters.updated += int(outcome.updated)
                    counters.failed += int(outcome.failed)
                    page_errors.extend(outcome.errors)

            cursor = page.cursor
            if cursor is None:
                return self._finish(run.id, counters, page_errors)

            self.ledger.checkpoint(
                run.id,
                cursor=cursor,
                counters=counters,
                status=RunStatus.PARTIAL,
                new_errors=page_errors,
            )
            status = RunStatus.PARTIAL

    def _stopped(self, run_id: int, cursor) -> Optional[ImportRun]:
        """The run, if something else (the watchdog) finished it meanwhile."""
        current = self.ledger.get(run_id)
        if not current.is_terminal:
            return None
        logger.warning(
            "Import run %s was %s while still running; stopping at cursor %s",
            run_id, current.status.value, cursor,
        )
        return current

    def _finish(self, run_id: int, counters: RunCounters, page_errors) -> ImportRun:
        if counters.failed and not (counters.created or counters.updated):
            return self.ledger.finish(
                run_id,
                RunStatus.FAILED,
                counters=counters,
                new_errors=page_errors,
                last_error=(
                    f"{counters.failed} of {counters.processed} catalog entries failed; "
                    "nothing was created or updated"
                ),
            )
        return self.ledger.finish(
            run_id, RunStatus.SUCCESS, counters=counters, new_errors=page_errors
        )

    async def _hand_off(self, run_id: int, cursor, counters: RunCounters, page_errors) -> ImportRun:
        run = self.ledger.checkpoint(
            run_id,
            cursor=cursor,
            counters=counters,
            status=RunStatus.PARTIAL,
            new_errors=page_errors,
        )
        await self.queue.enqueue(run_id)
        return run

    def _record_connection(self, integration_id: int, *, error: Optional[str]) -> None:
        with Session(self.engine) as s:
            integration = s.get(Integration, integration_id)
            if integration is None:
                return
            integration.last_error = error
            if error is None:
                integration.last_success_at = datetime.utcnow()
            s.add(integration)
            s.commit()
