"""Import watchdog: fail RUNNING (or never claimed) runs that stopped making progress."""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from catalogsync.errors import ErrorCode, RunStateError
from catalogsync.sync.ledger import RunLedger

logger = logging.getLogger(__name__)


def fail_stale_runs(
    ledger: RunLedger, threshold_minutes: int, now: Optional[datetime] = None
) -> List[int]:
    """
    Fail every RUNNING or unclaimed PENDING run whose last_progress_at is
    older than the threshold.

    A run that crashed between checkpoints would otherwise block new imports
    for its integration forever.

    Returns:
        Ids of the runs that were failed.
    """
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=threshold_minutes)
    failed = []
    for run in ledger.stale_running(cutoff):
        try:
            ledger.fail(
                run.id,
                ErrorCode.WATCHDOG_TIMEOUT,
                f"No progress for {threshold_minutes} minutes; aborted by watchdog",
                context={"last_progress_at": run.last_progress_at.isoformat()},
            )
        except RunStateError:
            # finished on its own since the query
            continue
        failed.append(run.id)
    return failed
