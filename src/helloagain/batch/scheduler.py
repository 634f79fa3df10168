# src/helloagain/batch/scheduler.py
"""Recurring status polling for active batch jobs.

One interval job on an APScheduler AsyncIOScheduler. Each tick lists the
ledger's active jobs, polls the remote for each, and records the reports.
The first tick runs immediately on start.

Ticks never overlap. APScheduler's ``max_instances=1`` drops a scheduled
run while the previous one is executing, and an asyncio.Lock covers manual
``tick()`` calls racing the scheduled ones: a tick that finds the lock held
is skipped, not queued.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from helloagain.batch.client import BatchClient
from helloagain.batch.ledger import JobLedger
from helloagain.contracts.errors import HelloAgainError
from helloagain.contracts.jobs import Job, ReattachCandidate, RemoteJobSummary
from helloagain.core.logging import get_logger

logger = get_logger(__name__)

POLL_JOB_ID = "poll-active-jobs"


@dataclass(frozen=True)
class TickReport:
    """Outcome of one polling pass.

    Attributes:
        polled: Active jobs found in the ledger
        updated: Jobs whose status changed
        failed: Jobs whose poll or record step raised
        skipped: True if the tick did nothing because another was running
        jobs: Stored records after the pass, for jobs that polled cleanly
    """

    polled: int = 0
    updated: int = 0
    failed: int = 0
    skipped: bool = False
    jobs: tuple[Job, ...] = field(default_factory=tuple)


async def poll_and_record(ledger: JobLedger, client: BatchClient) -> TickReport:
    """Poll every active job once and record the remote reports.

    A failure on one job is logged and counted; the remaining jobs are
    still polled. A job deleted from the ledger while its status was in
    flight is dropped from the report.
    """
    active = await ledger.list_active()
    updated = 0
    failed = 0
    stored_jobs: list[Job] = []

    for job in active:
        try:
            report = await client.poll_status(job.job_id)
            stored = await ledger.record_remote(report)
        except HelloAgainError as e:
            failed += 1
            logger.warning("Failed to poll job", job_id=job.job_id, error=str(e), error_type=type(e).__name__)
            continue

        if stored is None:
            continue
        stored_jobs.append(stored)
        if stored.status != job.status:
            updated += 1
            logger.info("Job status changed", job_id=job.job_id, old_status=job.status.value, new_status=stored.status.value)

    return TickReport(polled=len(active), updated=updated, failed=failed, jobs=tuple(stored_jobs))


def find_unimported(remote: Sequence[RemoteJobSummary], local: Sequence[Job]) -> list[ReattachCandidate]:
    """Annotate remote jobs with whether the ledger already holds them.

    Remote order is preserved. Nothing is imported here.
    """
    known = {job.job_id for job in local}
    return [ReattachCandidate(summary=summary, already_imported=summary.job_id in known) for summary in remote]


class PollScheduler:
    """Drives active jobs through status polling on a fixed interval."""

    def __init__(
        self,
        ledger: JobLedger,
        client: BatchClient,
        *,
        interval_seconds: float = 60.0,
        on_tick: Callable[[TickReport], None] | None = None,
    ) -> None:
        self._ledger = ledger
        self._client = client
        self._interval_seconds = interval_seconds
        self._on_tick = on_tick
        self._lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    async def tick(self) -> TickReport:
        """Run one polling pass now, unless one is already running."""
        if self._lock.locked():
            logger.debug("Previous poll still running, skipping tick")
            return TickReport(skipped=True)
        async with self._lock:
            report = await poll_and_record(self._ledger, self._client)
        logger.debug("Poll tick finished", polled=report.polled, updated=report.updated, failed=report.failed)
        return report

    async def _scheduled_tick(self) -> None:
        if self._stopped:
            return
        try:
            report = await self.tick()
        except HelloAgainError as e:
            # Ledger unreadable; the next tick tries again.
            logger.error("Poll tick failed", error=str(e), error_type=type(e).__name__)
            return
        if self._on_tick is not None and not report.skipped:
            self._on_tick(report)

    def start(self) -> None:
        """Begin polling. Must be called from a running event loop."""
        if self.running:
            logger.warning("Poll scheduler already running")
            return

        self._stopped = False
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=POLL_JOB_ID,
            next_run_time=datetime.now(UTC),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        self._scheduler.start()
        logger.info("Poll scheduler started", interval_seconds=self._interval_seconds)

    async def stop(self) -> None:
        """Stop polling. An in-flight tick finishes before this returns."""
        scheduler = self._scheduler
        if scheduler is None:
            return

        self._stopped = True
        scheduler.pause()
        async with self._lock:
            pass
        scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Poll scheduler stopped")
