"""Tests for PollScheduler and the polling pass."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import BASE_TIME, make_job

from helloagain.batch.ledger import JobLedger
from helloagain.batch.scheduler import PollScheduler, TickReport, find_unimported, poll_and_record
from helloagain.contracts.enums import JobStatus
from helloagain.contracts.errors import RemoteRejected, RemoteUnavailable
from helloagain.contracts.jobs import Job, JobCounts, RemoteJobSummary


class FakeClient:
    """Stands in for BatchClient.poll_status with scripted reports."""

    def __init__(self, reports: dict[str, Job | Exception] | None = None) -> None:
        self.reports = reports or {}
        self.polled: list[str] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def poll_status(self, job_id: str) -> Job:
        self.polled.append(job_id)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        report = self.reports.get(job_id)
        if isinstance(report, Exception):
            raise report
        if report is None:
            raise RemoteRejected("No batch found", status_code=404)
        return report


class TestPollAndRecord:
    @pytest.mark.asyncio
    async def test_polls_only_active_jobs(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("running", JobStatus.IN_PROGRESS))
        await ledger.upsert(make_job("done", JobStatus.COMPLETED))
        client = FakeClient({"running": make_job("running", JobStatus.IN_PROGRESS)})

        report = await poll_and_record(ledger, client)  # type: ignore[arg-type]

        assert client.polled == ["running"]
        assert report.polled == 1
        assert report.updated == 0

    @pytest.mark.asyncio
    async def test_records_status_changes(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1", JobStatus.VALIDATING))
        client = FakeClient(
            {
                "batch_1": make_job(
                    "batch_1",
                    JobStatus.COMPLETED,
                    output_artifact_id="file-out",
                    counts=JobCounts(total=2, completed=2, failed=0),
                )
            }
        )

        report = await poll_and_record(ledger, client)  # type: ignore[arg-type]

        stored = await ledger.get("batch_1")
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert stored.output_artifact_id == "file-out"
        assert report.updated == 1
        assert report.jobs == (stored,)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_the_pass(self, ledger: JobLedger) -> None:
        for index, job_id in enumerate(["a", "b", "c"]):
            await ledger.upsert(make_job(job_id, created_at=BASE_TIME + timedelta(minutes=index)))
        client = FakeClient(
            {
                "a": make_job("a", JobStatus.FINALIZING),
                "b": RemoteUnavailable("timed out"),
                "c": make_job("c", JobStatus.FAILED),
            }
        )

        report = await poll_and_record(ledger, client)  # type: ignore[arg-type]

        assert report == TickReport(polled=3, updated=2, failed=1, jobs=report.jobs)
        assert sorted(client.polled) == ["a", "b", "c"]
        unchanged = await ledger.get("b")
        assert unchanged is not None
        assert unchanged.status == JobStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_job_deleted_mid_poll_is_not_restored(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1", JobStatus.IN_PROGRESS))
        client = FakeClient({"batch_1": make_job("batch_1", JobStatus.COMPLETED)})
        client.gate = asyncio.Event()

        tick = asyncio.create_task(poll_and_record(ledger, client))  # type: ignore[arg-type]
        await client.entered.wait()
        await ledger.remove("batch_1")
        client.gate.set()
        report = await tick

        assert await ledger.get("batch_1") is None
        assert report == TickReport(polled=1, updated=0, failed=0, jobs=())

    @pytest.mark.asyncio
    async def test_no_active_jobs(self, ledger: JobLedger) -> None:
        report = await poll_and_record(ledger, FakeClient())  # type: ignore[arg-type]

        assert report == TickReport()


class TestTick:
    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("slow"))
        client = FakeClient({"slow": make_job("slow", JobStatus.COMPLETED)})
        client.gate = asyncio.Event()
        scheduler = PollScheduler(ledger, client)  # type: ignore[arg-type]

        first = asyncio.create_task(scheduler.tick())
        await client.entered.wait()
        second = await scheduler.tick()
        client.gate.set()
        first_report = await first

        assert second.skipped is True
        assert first_report.skipped is False
        assert first_report.updated == 1
        assert client.polled == ["slow"]


class TestStartStop:
    @pytest.mark.asyncio
    async def test_first_tick_runs_immediately(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))
        client = FakeClient({"batch_1": make_job("batch_1", JobStatus.COMPLETED)})
        ticked = asyncio.Event()
        reports: list[TickReport] = []

        def on_tick(report: TickReport) -> None:
            reports.append(report)
            ticked.set()

        scheduler = PollScheduler(ledger, client, interval_seconds=3600, on_tick=on_tick)  # type: ignore[arg-type]
        scheduler.start()
        try:
            assert scheduler.running is True
            await asyncio.wait_for(ticked.wait(), timeout=5)
        finally:
            await scheduler.stop()

        assert scheduler.running is False
        assert reports[0].updated == 1

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_tick_finish(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))
        client = FakeClient({"batch_1": make_job("batch_1", JobStatus.COMPLETED)})
        client.gate = asyncio.Event()
        scheduler = PollScheduler(ledger, client, interval_seconds=3600)  # type: ignore[arg-type]

        scheduler.start()
        await asyncio.wait_for(client.entered.wait(), timeout=5)
        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        client.gate.set()
        await asyncio.wait_for(stopping, timeout=5)

        stored = await ledger.get("batch_1")
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self, ledger: JobLedger) -> None:
        scheduler = PollScheduler(ledger, FakeClient())  # type: ignore[arg-type]

        await scheduler.stop()

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self, ledger: JobLedger) -> None:
        await ledger.upsert(make_job("batch_1"))
        client = FakeClient({"batch_1": make_job("batch_1")})
        ticked = asyncio.Event()
        scheduler = PollScheduler(ledger, client, interval_seconds=0.05, on_tick=lambda _: ticked.set())  # type: ignore[arg-type]

        scheduler.start()
        await asyncio.wait_for(ticked.wait(), timeout=5)
        await scheduler.stop()
        polled_at_stop = len(client.polled)
        await asyncio.sleep(0.2)

        assert len(client.polled) == polled_at_stop


class TestFindUnimported:
    def test_flags_known_jobs(self) -> None:
        remote = [
            RemoteJobSummary(job_id="batch_new", status=JobStatus.COMPLETED, created_at=BASE_TIME),
            RemoteJobSummary(job_id="batch_known", status=JobStatus.IN_PROGRESS, created_at=BASE_TIME),
        ]
        local = [replace(make_job("batch_known"), status=JobStatus.IN_PROGRESS)]

        candidates = find_unimported(remote, local)

        assert [(c.summary.job_id, c.already_imported) for c in candidates] == [
            ("batch_new", False),
            ("batch_known", True),
        ]
