"""
Continuation queues: hand a checkpointed run to a fresh execution context.

When an execution context runs out of time budget it persists PARTIAL and
enqueues the run id here instead of finishing the catalog itself.

    SchedulerContinuationQueue  one-shot APScheduler job per continuation
    LocalContinuationQueue      in-process FIFO, drained by the CLI
"""
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Protocol

logger = logging.getLogger(__name__)


def continuation_job_id(run_id: int) -> str:
    return f"import-continue-{run_id}"


class ContinuationQueue(Protocol):
    async def enqueue(self, run_id: int) -> None:
        ...


class SchedulerContinuationQueue:
    """
    Schedules each continuation as a `date` job that fires immediately.

    The job id is derived from the run id, so re-enqueueing a run that is
    already waiting replaces the pending job instead of adding a second one.
    """

    def __init__(self, scheduler, job: Callable[..., Awaitable[None]], **job_kwargs):
        """
        Args:
            scheduler: A (running) APScheduler AsyncIOScheduler.
            job: Coroutine function called as job(run_id=..., **job_kwargs).
        """
        self.scheduler = scheduler
        self.job = job
        self.job_kwargs = job_kwargs

    async def enqueue(self, run_id: int) -> None:
        self.scheduler.add_job(
            self.job,
            trigger="date",
            id=continuation_job_id(run_id),
            replace_existing=True,
            misfire_grace_time=None,
            kwargs={"run_id": run_id, **self.job_kwargs},
        )
        logger.info("Scheduled continuation for import run %s", run_id)


class LocalContinuationQueue:
    """FIFO of run ids for running an import to completion in one process."""

    def __init__(self):
        self.pending: Deque[int] = deque()
        self.history: List[int] = []

    async def enqueue(self, run_id: int) -> None:
        self.pending.append(run_id)
        self.history.append(run_id)

    async def drain(self, run: Callable[[int], Awaitable[object]]) -> int:
        """Run queued continuations (including ones they enqueue). Returns how many ran."""
        count = 0
        while self.pending:
            run_id = self.pending.popleft()
            await run(run_id)
            count += 1
        return count
