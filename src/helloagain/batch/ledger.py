# src/helloagain/batch/ledger.py
"""Durable record of every submitted batch job.

All jobs live in ONE value: the job array under key ``batches`` in the
``settings`` partition. The store has no listing or query support, so every
operation is a read of that array, an in-memory filter or edit, and (for
writes) a put of the whole array back.

Every write goes through ``DurableStore.modify``, which reads, edits and
writes the array in one store transaction. Two ledgers over the same store,
in one process or several, cannot drop each other's jobs. Writes to the
same job id are last-write-wins.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from helloagain.contracts.enums import JobStatus
from helloagain.contracts.errors import DecodeFailure
from helloagain.contracts.jobs import Job
from helloagain.core.logging import get_logger
from helloagain.core.store import SETTINGS, DurableStore

logger = get_logger(__name__)

LEDGER_KEY = "batches"


def _newest_first(jobs: list[Job]) -> list[Job]:
    return sorted(jobs, key=lambda job: job.created_at, reverse=True)


def _decode_jobs(raw: Any | None) -> list[Job]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise DecodeFailure(f"Stored job ledger must be a list, got {type(raw).__name__}")
    return [Job.from_dict(record) for record in raw]


class JobLedger:
    """Job records keyed by job id, persisted through a DurableStore."""

    def __init__(self, store: DurableStore) -> None:
        self._store = store

    async def _load(self) -> list[Job]:
        return _decode_jobs(await self._store.get(SETTINGS, LEDGER_KEY))

    async def _modify(self, edit: Callable[[list[Job]], list[Job]]) -> None:
        def edit_records(raw: Any | None) -> list[dict[str, Any]]:
            return [job.to_dict() for job in edit(_decode_jobs(raw))]

        await self._store.modify(SETTINGS, LEDGER_KEY, edit_records)

    async def upsert(self, job: Job) -> None:
        """Insert job, or replace the stored record with the same id."""

        def edit(jobs: list[Job]) -> list[Job]:
            kept = [existing for existing in jobs if existing.job_id != job.job_id]
            return [*kept, job]

        await self._modify(edit)
        logger.debug("Upserted job", job_id=job.job_id, status=job.status.value)

    async def record_remote(self, report: Job) -> Job | None:
        """Apply a remote status report to the stored record.

        The merge runs in the same transaction as the read, so locally
        recorded fields (row context, creation time) survive. A report for
        a job that is not in the ledger changes nothing; the job may have
        been deleted while its status was being fetched.

        Returns:
            The record as stored, or None if the job is unknown
        """
        stored: Job | None = None

        def edit(jobs: list[Job]) -> list[Job]:
            nonlocal stored
            updated: list[Job] = []
            for existing in jobs:
                if existing.job_id == report.job_id:
                    stored = existing.apply_remote(report)
                    updated.append(stored)
                else:
                    updated.append(existing)
            return updated

        await self._modify(edit)
        if stored is None:
            logger.debug("Ignored report for job not in ledger", job_id=report.job_id)
        return stored

    async def get(self, job_id: str) -> Job | None:
        for job in await self._load():
            if job.job_id == job_id:
                return job
        return None

    async def list_all(self) -> list[Job]:
        """Every job, newest first by creation time."""
        return _newest_first(await self._load())

    async def list_active(self) -> list[Job]:
        """Jobs the remote may still change, newest first."""
        return [job for job in await self.list_all() if job.is_active]

    async def list_terminal_successful(self) -> list[Job]:
        """Completed jobs, newest first."""
        return [job for job in await self.list_all() if job.status == JobStatus.COMPLETED]

    async def remove(self, job_id: str) -> bool:
        """Delete a job record. Returns False if it was not there."""
        removed = False

        def edit(jobs: list[Job]) -> list[Job]:
            nonlocal removed
            kept = [job for job in jobs if job.job_id != job_id]
            removed = len(kept) != len(jobs)
            return kept

        await self._modify(edit)
        if removed:
            logger.info("Removed job from ledger", job_id=job_id)
        return removed

    async def clear(self) -> None:
        """Forget every job."""
        await self._store.delete(SETTINGS, LEDGER_KEY)
        logger.info("Cleared job ledger")
