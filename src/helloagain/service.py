# src/helloagain/service.py
"""Enrichment workflow over explicit dependencies.

EnrichmentService holds the store, ledger, compiler and a client factory;
nothing is a module-level singleton. The CLI builds one per command with
:meth:`EnrichmentService.from_settings`; tests build one over an in-memory
store and a fake or respx-mocked client.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Self

from helloagain.batch.client import BatchClient, check_api_key_format
from helloagain.batch.compiler import RequestCompiler
from helloagain.batch.ledger import JobLedger
from helloagain.batch.reconciler import decode_results, merge_items
from helloagain.batch.scheduler import PollScheduler, TickReport, find_unimported, poll_and_record
from helloagain.codec.rows import parse_rows, summarize_rows
from helloagain.contracts.enums import JobStatus
from helloagain.contracts.errors import (
    DecodeFailure,
    HelloAgainError,
    PreconditionMissing,
    RemoteRejected,
    RemoteUnavailable,
    SchemaInvalid,
)
from helloagain.contracts.jobs import Job, ReattachCandidate, RowContext
from helloagain.contracts.records import ConnectionStats, MergeResult, ResultItem, RowRecord
from helloagain.core.archive import extract_primary_table
from helloagain.core.config import HelloAgainSettings
from helloagain.core.logging import get_logger
from helloagain.core.store import SETTINGS, UPLOADS, DurableStore, SQLiteStore

logger = get_logger(__name__)

ARCHIVE_KEY = "archive"
ARCHIVE_INFO_KEY = "archive_info"
API_KEY_KEY = "api_key"


@dataclass(frozen=True)
class ArchiveInfo:
    """What was uploaded, recorded next to the archive bytes."""

    filename: str
    size_bytes: int
    uploaded_at: datetime
    row_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "uploaded_at": self.uploaded_at.isoformat(),
            "row_count": self.row_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveInfo:
        return cls(
            filename=str(data["filename"]),
            size_bytes=int(data["size_bytes"]),
            uploaded_at=datetime.fromisoformat(data["uploaded_at"]),
            row_count=int(data["row_count"]),
        )


ClientFactory = Callable[[str], BatchClient]


class EnrichmentService:
    """Upload, submit, track and reconcile enrichment batches."""

    def __init__(
        self,
        store: DurableStore,
        *,
        ledger: JobLedger | None = None,
        compiler: RequestCompiler | None = None,
        client_factory: ClientFactory = BatchClient,
        configured_api_key: str | None = None,
        poll_interval_seconds: float = 60.0,
        schema: dict[str, Any] | None = None,
    ) -> None:
        """Initialize service.

        Args:
            store: Durable store holding the archive, API key and ledger
            ledger: Job ledger; one over ``store`` if None
            compiler: Request compiler; defaults if None
            client_factory: Builds a BatchClient from an API key
            configured_api_key: Key from configuration, preferred over the stored key
            poll_interval_seconds: Period for schedulers built by :meth:`scheduler`
            schema: Response schema sent with every request; the built-in
                profile schema if None
        """
        self._store = store
        self._ledger = ledger or JobLedger(store)
        self._compiler = compiler or RequestCompiler()
        self._client_factory = client_factory
        self._configured_api_key = configured_api_key
        self._poll_interval_seconds = poll_interval_seconds
        self._schema = schema
        self._client: BatchClient | None = None
        self._owned_store: SQLiteStore | None = None

    @classmethod
    def from_settings(cls, settings: HelloAgainSettings) -> Self:
        store = SQLiteStore(settings.store.url)
        service = cls(
            store,
            compiler=RequestCompiler.from_settings(settings),
            client_factory=lambda api_key: BatchClient.from_settings(settings.openai, api_key),
            configured_api_key=settings.openai.api_key,
            poll_interval_seconds=settings.polling.interval_seconds,
        )
        service._owned_store = store
        return service

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    # === Archive ===

    async def store_archive(self, blob: bytes, filename: str) -> ArchiveInfo:
        """Validate and keep an uploaded export archive, replacing any previous one.

        Raises:
            PreconditionMissing: If blob is not a ZIP or holds no connections table
        """
        text = extract_primary_table(blob)
        if text is None:
            raise PreconditionMissing(f"No Connections.csv found in {filename}")

        info = ArchiveInfo(
            filename=filename,
            size_bytes=len(blob),
            uploaded_at=datetime.now(UTC),
            row_count=len(parse_rows(text)),
        )
        await self._store.put(UPLOADS, ARCHIVE_KEY, blob)
        await self._store.put(SETTINGS, ARCHIVE_INFO_KEY, info.to_dict())
        logger.info("Stored archive", filename=filename, size_bytes=info.size_bytes, row_count=info.row_count)
        return info

    async def archive_info(self) -> ArchiveInfo | None:
        raw = await self._store.get(SETTINGS, ARCHIVE_INFO_KEY)
        return ArchiveInfo.from_dict(raw) if raw is not None else None

    async def load_rows(self) -> list[RowRecord]:
        """Re-parse the stored archive.

        Raises:
            PreconditionMissing: If nothing was uploaded or the archive has
                no connections table
        """
        blob = await self._store.get(UPLOADS, ARCHIVE_KEY)
        if blob is None:
            raise PreconditionMissing("No connections archive uploaded yet")
        text = extract_primary_table(blob)
        if text is None:
            raise PreconditionMissing("Stored archive has no Connections.csv")
        return parse_rows(text)

    async def connection_stats(self, *, now: datetime | None = None) -> ConnectionStats:
        return summarize_rows(await self.load_rows(), now=now)

    async def preview(self, count: int = 10) -> list[RowRecord]:
        """The first ``count`` parsed rows."""
        rows = await self.load_rows()
        return rows[:count]

    # === API key ===

    async def save_api_key(self, api_key: str, *, verify: bool = True) -> None:
        """Check and store the API key.

        Raises:
            PreconditionMissing: If the key is malformed
            RemoteRejected: If verification is requested and the remote refuses the key
        """
        trimmed = check_api_key_format(api_key)
        if verify:
            client = self._client_factory(trimmed)
            try:
                await client.verify_credentials()
            finally:
                await client.aclose()
        await self._store.put(SETTINGS, API_KEY_KEY, trimmed)
        # A cached client may hold the old key.
        await self._close_client()
        logger.info("Stored API key", verified=verify)

    async def api_key(self) -> str:
        """Configured key if set, else the stored one.

        Raises:
            PreconditionMissing: If neither exists
        """
        if self._configured_api_key:
            return self._configured_api_key
        stored = await self._store.get(SETTINGS, API_KEY_KEY)
        if not stored:
            raise PreconditionMissing("No API key configured. Set one with 'helloagain set-key' or HELLOAGAIN_OPENAI__API_KEY")
        return str(stored)

    async def _get_client(self) -> BatchClient:
        if self._client is None:
            self._client = self._client_factory(await self.api_key())
        return self._client

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # === Jobs ===

    async def submit(self, *, limit: int | None = None, description: str | None = None) -> Job:
        """Compile the stored rows into one batch and submit it.

        Args:
            limit: Only submit the first ``limit`` rows; must be positive
            description: Job description; derived from the row counts if None

        Raises:
            PreconditionMissing: Non-positive limit, no archive, no rows, or no API key
            SchemaInvalid: Response schema not strict-mode compliant
            RemoteRejected: Upload or open failed
        """
        if limit is not None and limit <= 0:
            raise PreconditionMissing(f"Row limit must be positive, got {limit}")
        rows = await self.load_rows()
        total = len(rows)
        selected = rows[:limit] if limit is not None else rows
        if not selected:
            raise PreconditionMissing("No connections found in the uploaded archive")

        requests = self._compiler.compile(selected, self._schema)
        row_context = RowContext(
            row_count=len(selected),
            description=description or f"LinkedIn connections enrichment ({len(selected)} of {total})",
            total_rows=total,
        )

        client = await self._get_client()
        job = await client.submit(requests, row_context)
        await self._ledger.upsert(job)
        logger.info("Submitted job", job_id=job.job_id, row_count=len(selected), total_rows=total)
        return job

    async def refresh(self) -> TickReport:
        """Poll every active job once."""
        client = await self._get_client()
        return await poll_and_record(self._ledger, client)

    async def refresh_job(self, job_id: str) -> Job:
        """Poll one job and record the report."""
        await self._require_job(job_id)
        client = await self._get_client()
        return self._recorded(job_id, await self._ledger.record_remote(await client.poll_status(job_id)))

    async def jobs(self) -> list[Job]:
        return await self._ledger.list_all()

    async def _require_job(self, job_id: str) -> Job:
        job = await self._ledger.get(job_id)
        if job is None:
            raise PreconditionMissing(f"Unknown job {job_id}")
        return job

    @staticmethod
    def _recorded(job_id: str, stored: Job | None) -> Job:
        if stored is None:
            raise PreconditionMissing(f"Job {job_id} was deleted while its status was being fetched")
        return stored

    async def results(self, job_id: str) -> MergeResult:
        """Fetch a completed job's output and error files and merge them onto the rows.

        Output lines take precedence over error lines for the same id.

        Raises:
            PreconditionMissing: Unknown job, job not completed, or no result files
            RemoteRejected: Download failed
            DecodeFailure: A result file is not valid JSONL
        """
        job = await self._require_job(job_id)
        if job.status != JobStatus.COMPLETED:
            raise PreconditionMissing(f"Job {job_id} is {job.status.value}; results are available once it completes")
        if job.output_artifact_id is None and job.error_artifact_id is None:
            raise PreconditionMissing(f"Job {job_id} has no result files")

        rows = await self.load_rows()
        client = await self._get_client()

        items: list[ResultItem] = []
        if job.error_artifact_id is not None:
            items.extend(decode_results(await client.fetch_results_raw(job.error_artifact_id)))
        if job.output_artifact_id is not None:
            items.extend(decode_results(await client.fetch_results_raw(job.output_artifact_id)))

        result = merge_items(rows, items)
        logger.info("Merged results", job_id=job_id, **result.stats.to_dict())
        return result

    async def list_remote(self, limit: int = 20) -> list[ReattachCandidate]:
        """Remote jobs, each flagged if the ledger already has it."""
        client = await self._get_client()
        remote = await client.list_remote_jobs(limit)
        return find_unimported(remote, await self._ledger.list_all())

    async def reattach(self, job_id: str) -> Job:
        """Import a remote job into the ledger. A known job is returned unchanged."""
        existing = await self._ledger.get(job_id)
        if existing is not None:
            return existing
        client = await self._get_client()
        job = await client.poll_status(job_id)
        await self._ledger.upsert(job)
        logger.info("Reattached job", job_id=job_id, status=job.status.value)
        return job

    async def cancel(self, job_id: str) -> Job:
        """Request remote cancellation and record the reported state."""
        job = await self._require_job(job_id)
        if not job.is_active:
            raise PreconditionMissing(f"Job {job_id} is already {job.status.value}")
        client = await self._get_client()
        return self._recorded(job_id, await self._ledger.record_remote(await client.cancel(job_id)))

    async def delete(self, job_id: str) -> bool:
        """Forget a job locally. The remote job is untouched."""
        return await self._ledger.remove(job_id)

    async def scheduler(
        self,
        on_tick: Callable[[TickReport], None] | None = None,
        *,
        interval_seconds: float | None = None,
    ) -> PollScheduler:
        """A PollScheduler over this service's ledger and client (not started)."""
        client = await self._get_client()
        return PollScheduler(
            self._ledger,
            client,
            interval_seconds=interval_seconds or self._poll_interval_seconds,
            on_tick=on_tick,
        )

    async def aclose(self) -> None:
        await self._close_client()
        if self._owned_store is not None:
            self._owned_store.close()
            self._owned_store = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()


def describe_failure(exc: HelloAgainError) -> str:
    """User-facing text for an expected failure."""
    if isinstance(exc, RemoteUnavailable):
        return f"Could not reach the batch service: {exc.message}"
    if isinstance(exc, RemoteRejected):
        code = f" (HTTP {exc.status_code})" if exc.status_code is not None else ""
        return f"Batch service error{code}: {exc.message}"
    if isinstance(exc, SchemaInvalid):
        return "Response schema is invalid:\n" + "\n".join(f"  {violation}" for violation in exc.violations)
    if isinstance(exc, DecodeFailure):
        return f"Could not decode remote data: {exc}"
    return str(exc)
