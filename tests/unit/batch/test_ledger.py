"""Tests for JobLedger over the durable store."""

import asyncio
from datetime import datetime

import pytest
from conftest import make_job

from helloagain.batch.ledger import LEDGER_KEY, JobLedger
from helloagain.contracts.enums import JobStatus
from helloagain.contracts.errors import DecodeFailure
from helloagain.contracts.jobs import JobCounts, RowContext
from helloagain.core.store import SETTINGS, SQLiteStore


class TestUpsertAndGet:
    @pytest.mark.asyncio
    async def test_empty_ledger(self, ledger: JobLedger) -> None:
        assert await ledger.list_all() == []
        assert await ledger.get("batch_abc") is None

    @pytest.mark.asyncio
    async def test_round_trip(self, ledger: JobLedger) -> None:
        job = make_job(
            counts=JobCounts(total=3, completed=1, failed=0),
            row_context=RowContext(row_count=3, description="three", total_rows=10),
        )

        await ledger.upsert(job)

        assert await ledger.get("batch_abc") == job

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_id(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job(status=JobStatus.VALIDATING))
        await ledger.upsert(make_job(status=JobStatus.IN_PROGRESS))

        jobs = await ledger.list_all()

        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_stored_as_one_aggregate_value(self, store: SQLiteStore, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))
        await ledger.upsert(make_job("batch_2"))

        raw = await store.get(SETTINGS, LEDGER_KEY)

        assert [record["job_id"] for record in raw] == ["batch_1", "batch_2"]

    @pytest.mark.asyncio
    async def test_survives_new_ledger_instance(self, store: SQLiteStore) -> None:
        await JobLedger(store).upsert(make_job())

        assert await JobLedger(store).get("batch_abc") is not None


class TestListing:
    @pytest.mark.asyncio
    async def test_list_active_and_newest_first(self, ledger: JobLedger, staggered_times: list[datetime]) -> None:
        statuses = [JobStatus.COMPLETED, JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.CANCELLING]
        for index, (status, created) in enumerate(zip(statuses, staggered_times, strict=True)):
            await ledger.upsert(make_job(f"batch_{index}", status, created_at=created))

        active = await ledger.list_active()
        everything = await ledger.list_all()

        assert {job.job_id for job in active} == {"batch_1", "batch_3"}
        assert {job.status for job in active} == {JobStatus.IN_PROGRESS, JobStatus.CANCELLING}
        assert [job.job_id for job in everything] == ["batch_3", "batch_2", "batch_1", "batch_0"]

    @pytest.mark.asyncio
    async def test_list_all_sorts_regardless_of_insert_order(self, ledger: JobLedger, staggered_times: list[datetime]) -> None:
        await ledger.upsert(make_job("old", created_at=staggered_times[0]))
        await ledger.upsert(make_job("new", created_at=staggered_times[3]))
        await ledger.upsert(make_job("mid", created_at=staggered_times[1]))

        assert [job.job_id for job in await ledger.list_all()] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_list_terminal_successful(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("done", JobStatus.COMPLETED))
        await ledger.upsert(make_job("broken", JobStatus.FAILED))
        await ledger.upsert(make_job("gone", JobStatus.EXPIRED))

        assert [job.job_id for job in await ledger.list_terminal_successful()] == ["done"]

    @pytest.mark.asyncio
    async def test_submitted_counts_as_active(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job(status=JobStatus.SUBMITTED))

        assert len(await ledger.list_active()) == 1


class TestRemoveAndClear:
    @pytest.mark.asyncio
    async def test_remove(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))
        await ledger.upsert(make_job("batch_2"))

        assert await ledger.remove("batch_1") is True
        assert [job.job_id for job in await ledger.list_all()] == ["batch_2"]

    @pytest.mark.asyncio
    async def test_remove_unknown(self, ledger: JobLedger) -> None:
        assert await ledger.remove("nope") is False

    @pytest.mark.asyncio
    async def test_clear(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))

        await ledger.clear()

        assert await ledger.list_all() == []


class TestRecordRemote:
    @pytest.mark.asyncio
    async def test_keeps_local_fields(self, ledger: JobLedger) -> None:
        context = RowContext(row_count=3, description="local", total_rows=3)
        await ledger.upsert(make_job(status=JobStatus.VALIDATING, row_context=context))
        report = make_job(
            status=JobStatus.COMPLETED,
            output_artifact_id="file-out",
            counts=JobCounts(total=3, completed=3, failed=0),
        )

        stored = await ledger.record_remote(report)

        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert stored.output_artifact_id == "file-out"
        assert stored.row_context == context
        assert stored.last_polled_at is not None
        assert await ledger.get("batch_abc") == stored

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_stored(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))

        stored = await ledger.record_remote(make_job("batch_new", JobStatus.COMPLETED))

        assert stored is None
        assert [job.job_id for job in await ledger.list_all()] == ["batch_1"]

    @pytest.mark.asyncio
    async def test_removed_job_stays_removed(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1", JobStatus.IN_PROGRESS))
        await ledger.remove("batch_1")

        assert await ledger.record_remote(make_job("batch_1", JobStatus.COMPLETED)) is None
        assert await ledger.get("batch_1") is None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_upserts_of_different_jobs_all_land(self, ledger: JobLedger) -> None:
        await asyncio.gather(*(ledger.upsert(make_job(f"batch_{i}")) for i in range(20)))

        assert {job.job_id for job in await ledger.list_all()} == {f"batch_{i}" for i in range(20)}

    @pytest.mark.asyncio
    async def test_ledgers_sharing_a_store_do_not_drop_jobs(self, store: SQLiteStore) -> None:
        first, second = JobLedger(store), JobLedger(store)

        await asyncio.gather(first.upsert(make_job("batch_1")), second.upsert(make_job("batch_2")))

        assert {job.job_id for job in await first.list_all()} == {"batch_1", "batch_2"}

    @pytest.mark.asyncio
    async def test_report_and_upsert_from_different_ledgers(self, store: SQLiteStore) -> None:
        first, second = JobLedger(store), JobLedger(store)
        await first.upsert(make_job("batch_1", JobStatus.IN_PROGRESS))

        await asyncio.gather(
            first.record_remote(make_job("batch_1", JobStatus.COMPLETED)),
            *(second.upsert(make_job(f"batch_{i}")) for i in range(2, 12)),
        )

        stored = await first.get("batch_1")
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert len(await second.list_all()) == 11


class TestCorruptState:
    @pytest.mark.asyncio
    async def test_non_list_value(self, store: SQLiteStore, ledger: JobLedger) -> None:
        await store.put(SETTINGS, LEDGER_KEY, {"not": "a list"})

        with pytest.raises(DecodeFailure):
            await ledger.list_all()

    @pytest.mark.asyncio
    async def test_unknown_stored_status(self, store: SQLiteStore, ledger: JobLedger) -> None:
        record = make_job().to_dict()
        record["status"] = "paused"
        await store.put(SETTINGS, LEDGER_KEY, [record])

        with pytest.raises(DecodeFailure):
            await ledger.get("batch_abc")
