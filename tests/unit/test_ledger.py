"""Tests for the import run ledger and its state machine."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from catalogsync.errors import (
    ConfigurationError,
    ErrorCode,
    RunInProgressError,
    RunNotFoundError,
    RunStateError,
)
from catalogsync.models.import_run import ImportRun, RunStatus
from catalogsync.models.integration import Integration
from catalogsync.sync.ledger import RunCounters, RunLedger, append_capped, error_entry


@pytest.fixture(name="ledger")
def ledger_fixture(engine) -> RunLedger:
    return RunLedger(engine)


def _running(ledger: RunLedger, integration_id: int) -> ImportRun:
    return ledger.claim(ledger.open_run(integration_id).id)


class TestAppendCapped:
    def test_appends_under_cap(self):
        errors, suppressed = append_capped([], error_entry(ErrorCode.UPC_CONFLICT, "dup"), cap=3)
        assert len(errors) == 1
        assert suppressed == 0

    def test_first_overflow_replaces_last_slot_with_sentinel(self):
        errors = []
        for i in range(3):
            errors, _ = append_capped(errors, error_entry(ErrorCode.UPC_CONFLICT, str(i)), cap=3)
        errors, suppressed = append_capped(errors, error_entry(ErrorCode.UPC_CONFLICT, "3"), cap=3)
        assert len(errors) == 3
        assert errors[-1]["code"] == ErrorCode.ERROR_CAP_REACHED.value
        assert [e["message"] for e in errors[:2]] == ["0", "1"]
        assert suppressed == 2

    def test_after_sentinel_only_counts(self):
        errors = [error_entry(ErrorCode.UPC_CONFLICT, "0"), error_entry(ErrorCode.ERROR_CAP_REACHED, "cap")]
        new, suppressed = append_capped(errors, error_entry(ErrorCode.UPC_CONFLICT, "x"), cap=2)
        assert new == errors
        assert suppressed == 1

    def test_entry_shape(self):
        entry = error_entry(ErrorCode.FETCH_FAILED, "boom", {"cursor": "c1"})
        assert set(entry) == {"timestamp", "code", "message", "context"}
        assert entry["code"] == "FETCH_FAILED"
        datetime.fromisoformat(entry["timestamp"])


class TestOpenRun:
    def test_opens_pending(self, ledger, integration):
        run = ledger.open_run(integration.id)
        assert run.status == RunStatus.PENDING
        assert run.processed_count == 0
        assert run.errors == []

    def test_unknown_integration(self, ledger):
        with pytest.raises(ConfigurationError):
            ledger.open_run(999)

    def test_second_start_refused(self, ledger, integration):
        first = ledger.open_run(integration.id)
        with pytest.raises(RunInProgressError) as exc_info:
            ledger.open_run(integration.id)
        assert exc_info.value.run_id == first.id

    def test_partial_run_blocks_start(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.checkpoint(run.id, cursor="c2", counters=RunCounters(processed=5), status=RunStatus.PARTIAL)
        with pytest.raises(RunInProgressError):
            ledger.open_run(integration.id)

    def test_new_run_after_terminal(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.finish(run.id, RunStatus.SUCCESS, counters=RunCounters())
        assert ledger.open_run(integration.id).id != run.id

    def test_other_integrations_unaffected(self, ledger, integration, make_integration):
        ledger.open_run(integration.id)
        other = make_integration(name="Second store")
        assert ledger.open_run(other.id).status == RunStatus.PENDING

    def test_storage_rejects_two_active_rows(self, test_session, integration):
        test_session.add(ImportRun(integration_id=integration.id, status=RunStatus.RUNNING))
        test_session.add(ImportRun(integration_id=integration.id, status=RunStatus.PARTIAL))
        with pytest.raises(IntegrityError):
            test_session.commit()


class TestClaim:
    def test_claims_pending_run(self, ledger, integration):
        run = ledger.open_run(integration.id)
        claimed = ledger.claim(run.id)
        assert claimed.status == RunStatus.RUNNING
        assert claimed.last_progress_at >= run.last_progress_at

    def test_second_claim_is_refused(self, ledger, integration):
        run = ledger.open_run(integration.id)
        assert ledger.claim(run.id) is not None
        assert ledger.claim(run.id) is None
        assert ledger.get(run.id).status == RunStatus.RUNNING

    def test_claims_partial_run_once(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.checkpoint(run.id, cursor="c2", counters=RunCounters(processed=3), status=RunStatus.PARTIAL)

        claimed = ledger.claim(run.id)
        assert claimed.status == RunStatus.RUNNING
        assert claimed.cursor == "c2"
        assert claimed.processed_count == 3
        assert ledger.claim(run.id) is None

    def test_terminal_run_is_not_claimed(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.finish(run.id, RunStatus.SUCCESS, counters=RunCounters())
        assert ledger.claim(run.id) is None
        assert ledger.get(run.id).status == RunStatus.SUCCESS

    def test_unknown_run(self, ledger):
        with pytest.raises(RunNotFoundError):
            ledger.claim(404)


class TestTransitions:
    def test_checkpoint_persists_progress(self, ledger, integration):
        run = _running(ledger, integration.id)
        counters = RunCounters(processed=4, created=3, updated=1)
        saved = ledger.checkpoint(
            run.id,
            cursor="page-2",
            counters=counters,
            status=RunStatus.PARTIAL,
            new_errors=[error_entry(ErrorCode.UPC_CONFLICT, "dup")],
        )
        assert saved.status == RunStatus.PARTIAL
        assert saved.cursor == "page-2"
        assert (saved.processed_count, saved.created_count, saved.updated_count) == (4, 3, 1)
        assert len(saved.errors) == 1

    def test_partial_back_to_running(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.checkpoint(run.id, cursor="c", counters=RunCounters(), status=RunStatus.PARTIAL)
        assert ledger.transition(run.id, RunStatus.RUNNING).status == RunStatus.RUNNING

    def test_partial_cannot_succeed_directly(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.checkpoint(run.id, cursor="c", counters=RunCounters(), status=RunStatus.PARTIAL)
        with pytest.raises(RunStateError):
            ledger.finish(run.id, RunStatus.SUCCESS)

    def test_terminal_run_is_frozen(self, ledger, integration):
        run = _running(ledger, integration.id)
        ledger.finish(run.id, RunStatus.SUCCESS, counters=RunCounters(processed=1))
        with pytest.raises(RunStateError):
            ledger.transition(run.id, RunStatus.RUNNING)
        with pytest.raises(RunStateError):
            ledger.checkpoint(run.id, cursor="c", counters=RunCounters(), status=RunStatus.PARTIAL)

    def test_finish_requires_terminal_status(self, ledger, integration):
        run = ledger.open_run(integration.id)
        with pytest.raises(RunStateError):
            ledger.finish(run.id, RunStatus.PARTIAL)

    def test_unknown_run(self, ledger):
        with pytest.raises(RunNotFoundError):
            ledger.get(42)


class TestFinish:
    def test_success_clears_cursor_and_stamps_integration(self, ledger, integration, engine):
        run = _running(ledger, integration.id)
        ledger.checkpoint(run.id, cursor="c", counters=RunCounters(), status=RunStatus.PARTIAL)
        ledger.claim(run.id)
        done = ledger.finish(run.id, RunStatus.SUCCESS, counters=RunCounters(processed=2, created=2))

        assert done.cursor is None
        assert done.finished_at is not None
        with Session(engine) as s:
            stored = s.get(Integration, integration.id)
            assert stored.last_success_at is not None
            assert stored.last_error is None

    def test_fail_records_error_and_last_error(self, ledger, integration, engine):
        run = _running(ledger, integration.id)
        failed = ledger.fail(run.id, ErrorCode.CREDENTIALS, "token revoked")

        assert failed.status == RunStatus.FAILED
        assert failed.finished_at is not None
        assert failed.errors[-1]["code"] == "CREDENTIALS"
        with Session(engine) as s:
            assert s.get(Integration, integration.id).last_error == "token revoked"

    def test_error_cap_on_run(self, engine, integration):
        ledger = RunLedger(engine, error_cap=5)
        run = _running(ledger, integration.id)
        entries = [error_entry(ErrorCode.UPC_CONFLICT, str(i)) for i in range(8)]
        saved = ledger.checkpoint(
            run.id, cursor="c", counters=RunCounters(), status=RunStatus.PARTIAL, new_errors=entries
        )
        assert len(saved.errors) == 5
        assert saved.errors[-1]["code"] == "ERROR_CAP_REACHED"
        assert saved.errors_suppressed == 4


class TestStaleRunning:
    def test_finds_only_old_running(self, ledger, integration, make_integration, engine):
        old = _running(ledger, integration.id)
        fresh = _running(ledger, make_integration(name="Other").id)
        with Session(engine) as s:
            row = s.get(ImportRun, old.id)
            row.last_progress_at = datetime.utcnow() - timedelta(hours=1)
            s.add(row)
            s.commit()

        stale = ledger.stale_running(datetime.utcnow() - timedelta(minutes=15))
        assert [r.id for r in stale] == [old.id]
        assert fresh.id not in [r.id for r in stale]

    def test_unclaimed_pending_run_goes_stale(self, ledger, integration, engine):
        run = ledger.open_run(integration.id)
        with Session(engine) as s:
            row = s.get(ImportRun, run.id)
            row.last_progress_at = datetime.utcnow() - timedelta(hours=1)
            s.add(row)
            s.commit()

        stale = ledger.stale_running(datetime.utcnow() - timedelta(minutes=15))
        assert [r.id for r in stale] == [run.id]
