"""
Run ledger: owns the persisted state of ImportRun rows.

State machine:

    PENDING → RUNNING → {PARTIAL ⇄ RUNNING} → {SUCCESS | FAILED}

PARTIAL is the checkpoint reached when an execution context runs out of
time with a cursor remaining. SUCCESS and FAILED are terminal; a terminal run
is never mutated again.

Exclusivity: open_run() refuses when the integration already has a PENDING,
RUNNING or PARTIAL run. A partial unique index on import_run backs this up,
so two racing starts cannot both insert. Within a run, claim() is the only
way into RUNNING from PENDING or PARTIAL: a conditional UPDATE, so at most
one execution context holds the run at a time.

Error log: entries are {timestamp, code, message, context}. At most
`error_cap` entries are kept; on the first overflow the last slot is
overwritten once by an ERROR_CAP_REACHED sentinel and everything after that
is only counted in errors_suppressed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy import update
from sqlmodel import Session, col, select

from catalogsync.errors import (
    ConfigurationError,
    ErrorCode,
    RunInProgressError,
    RunNotFoundError,
    RunStateError,
)
from catalogsync.models.import_run import ACTIVE_STATUSES, ImportRun, RunStatus
from catalogsync.models.integration import Integration

logger = logging.getLogger(__name__)

DEFAULT_ERROR_CAP = 500

CLAIMABLE_STATUSES = (RunStatus.PENDING, RunStatus.PARTIAL)

ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.RUNNING, RunStatus.PARTIAL, RunStatus.SUCCESS, RunStatus.FAILED},
    RunStatus.PARTIAL: {RunStatus.PARTIAL, RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.SUCCESS: set(),
    RunStatus.FAILED: set(),
}


@dataclass
class RunCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0

    @classmethod
    def from_run(cls, run: ImportRun) -> "RunCounters":
        return cls(
            processed=run.processed_count,
            created=run.created_count,
            updated=run.updated_count,
            failed=run.failed_count,
        )

    def apply_to(self, run: ImportRun) -> None:
        run.processed_count = self.processed
        run.created_count = self.created
        run.updated_count = self.updated
        run.failed_count = self.failed


def error_entry(
    code: ErrorCode, message: str, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "code": ErrorCode(code).value,
        "message": message,
        "context": context or {},
    }


def cap_sentinel(cap: int) -> Dict[str, Any]:
    return error_entry(
        ErrorCode.ERROR_CAP_REACHED,
        f"Error log reached {cap} entries; further errors are not recorded",
        {"cap": cap},
    )


def append_capped(
    errors: List[Dict[str, Any]], entry: Dict[str, Any], cap: int = DEFAULT_ERROR_CAP
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Append one entry under the cap.

    Returns:
        (new error list, number of entries suppressed by this call)
    """
    if len(errors) < cap:
        return errors + [entry], 0
    if errors and errors[-1].get("code") == ErrorCode.ERROR_CAP_REACHED.value:
        return errors, 1
    # First overflow: the last slot's entry and this one are both dropped
    return errors[:cap - 1] + [cap_sentinel(cap)], 2


class RunLedger:
    """Persists ImportRun state. One short session per operation."""

    def __init__(self, engine, error_cap: int = DEFAULT_ERROR_CAP):
        self.engine = engine
        self.error_cap = error_cap

    # ── Queries ───────────────────────────────────────────────────────────────

    def get(self, run_id: int) -> ImportRun:
        with Session(self.engine) as s:
            run = s.get(ImportRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Import run {run_id} not found")
            return run

    def list_for(self, integration_id: int, limit: int = 20) -> List[ImportRun]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(ImportRun)
                    .where(ImportRun.integration_id == integration_id)
                    .order_by(col(ImportRun.started_at).desc(), col(ImportRun.id).desc())
                    .limit(limit)
                ).all()
            )

    def stale_running(self, older_than: datetime) -> List[ImportRun]:
        """
        RUNNING runs, and PENDING runs no context ever claimed, whose last
        progress is older than the given time.
        """
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(ImportRun).where(
                        col(ImportRun.status).in_((RunStatus.PENDING, RunStatus.RUNNING)),
                        ImportRun.last_progress_at < older_than,
                    )
                ).all()
            )

    # ── Admission ─────────────────────────────────────────────────────────────

    def open_run(self, integration_id: int) -> ImportRun:
        """
        Create a PENDING run for the integration. The first execution context
        moves it to RUNNING through claim().

        Raises:
            ConfigurationError: unknown integration.
            RunInProgressError: a non-terminal run already exists.
        """
        with Session(self.engine) as s:
            if s.get(Integration, integration_id) is None:
                raise ConfigurationError(f"Integration {integration_id} not found")

            active = self._active_for(s, integration_id)
            if active is not None:
                raise RunInProgressError(integration_id, active.id)

            run = ImportRun(integration_id=integration_id, status=RunStatus.PENDING)
            s.add(run)
            try:
                s.commit()
            except IntegrityError as exc:
                s.rollback()
                active = self._active_for(s, integration_id)
                raise RunInProgressError(
                    integration_id, active.id if active else None
                ) from exc
            s.refresh(run)

        logger.info("Opened import run %s for integration %s", run.id, integration_id)
        return run

    def claim(self, run_id: int) -> Optional[ImportRun]:
        """
        Move a PENDING or PARTIAL run to RUNNING for the calling context.

        The status check and the write are one conditional UPDATE, so of two
        contexts racing for the same run only one gets it.

        Returns:
            The claimed run, or None when the run is RUNNING in another
            context or already finished.

        Raises:
            RunNotFoundError: unknown run id.
        """
        with Session(self.engine) as s:
            result = s.connection().execute(
                update(ImportRun)
                .where(
                    col(ImportRun.id) == run_id,
                    col(ImportRun.status).in_(CLAIMABLE_STATUSES),
                )
                .values(status=RunStatus.RUNNING, last_progress_at=datetime.utcnow())
            )
            s.commit()
            run = s.get(ImportRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Import run {run_id} not found")
            if result.rowcount != 1:
                logger.info("Import run %s is %s; not claimed", run_id, run.status.value)
                return None
            return run

    # ── Mutations ─────────────────────────────────────────────────────────────

    def transition(self, run_id: int, status: RunStatus) -> ImportRun:
        def apply(run: ImportRun, s: Session) -> None:
            self._check_transition(run, status)
            run.status = status

        return self._mutate(run_id, apply)

    def checkpoint(
        self,
        run_id: int,
        *,
        cursor: Optional[str],
        counters: RunCounters,
        status: RunStatus,
        new_errors: Iterable[Dict[str, Any]] = (),
    ) -> ImportRun:
        """Persist page progress: cursor, counters, status and buffered errors."""

        def apply(run: ImportRun, s: Session) -> None:
            self._check_transition(run, status)
            run.cursor = cursor
            counters.apply_to(run)
            run.status = status
            self._append(run, new_errors)

        return self._mutate(run_id, apply)

    def finish(
        self,
        run_id: int,
        status: RunStatus,
        *,
        counters: Optional[RunCounters] = None,
        new_errors: Iterable[Dict[str, Any]] = (),
        last_error: Optional[str] = None,
    ) -> ImportRun:
        """Move the run to SUCCESS or FAILED and stamp finished_at."""
        if status not in (RunStatus.SUCCESS, RunStatus.FAILED):
            raise RunStateError(f"finish() needs a terminal status, got {status.value}")

        def apply(run: ImportRun, s: Session) -> None:
            self._check_transition(run, status)
            run.status = status
            run.finished_at = datetime.utcnow()
            if status == RunStatus.SUCCESS:
                run.cursor = None
            if counters is not None:
                counters.apply_to(run)
            self._append(run, new_errors)

            integration = s.get(Integration, run.integration_id)
            if integration is not None:
                if status == RunStatus.SUCCESS:
                    integration.last_error = None
                    integration.last_success_at = run.finished_at
                else:
                    integration.last_error = last_error or _last_message(run)
                s.add(integration)

        run = self._mutate(run_id, apply)
        logger.info(
            "Import run %s finished %s: processed=%d created=%d updated=%d failed=%d",
            run.id, run.status.value, run.processed_count, run.created_count,
            run.updated_count, run.failed_count,
        )
        return run

    def fail(
        self,
        run_id: int,
        code: ErrorCode,
        message: str,
        *,
        counters: Optional[RunCounters] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ImportRun:
        """Record a fatal error and end the run as FAILED."""
        logger.error("Import run %s failed (%s): %s", run_id, ErrorCode(code).value, message)
        return self.finish(
            run_id,
            RunStatus.FAILED,
            counters=counters,
            new_errors=[error_entry(code, message, context)],
            last_error=message,
        )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _active_for(self, s: Session, integration_id: int) -> Optional[ImportRun]:
        return s.exec(
            select(ImportRun)
            .where(
                ImportRun.integration_id == integration_id,
                col(ImportRun.status).in_(ACTIVE_STATUSES),
            )
            .order_by(col(ImportRun.started_at).desc())
        ).first()

    def _mutate(self, run_id: int, apply) -> ImportRun:
        with Session(self.engine) as s:
            run = s.get(ImportRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Import run {run_id} not found")
            if run.is_terminal:
                raise RunStateError(
                    f"Import run {run_id} is {run.status.value} and can no longer change"
                )
            apply(run, s)
            run.last_progress_at = datetime.utcnow()
            s.add(run)
            s.commit()
            s.refresh(run)
            return run

    def _append(self, run: ImportRun, entries: Iterable[Dict[str, Any]]) -> None:
        errors = list(run.errors or [])
        suppressed = 0
        for entry in entries:
            errors, dropped = append_capped(errors, entry, self.error_cap)
            suppressed += dropped
        # reassign so the JSON column is flagged dirty
        run.errors = errors
        run.errors_suppressed = (run.errors_suppressed or 0) + suppressed

    @staticmethod
    def _check_transition(run: ImportRun, status: RunStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[run.status]:
            raise RunStateError(
                f"Import run {run.id} cannot move from {run.status.value} to {status.value}"
            )


def _last_message(run: ImportRun) -> Optional[str]:
    if run.errors:
        return run.errors[-1].get("message")
    return None
