# src/helloagain/batch/client.py
"""Remote batch job lifecycle over the OpenAI Files and Batches APIs.

Every operation is a single remote round trip (submit is two: upload, then
open) and is safe to repeat. Nothing here retries: the SDK is built with
``max_retries=0`` unless configured otherwise, and failures surface as
RemoteRejected / RemoteUnavailable for the caller to handle. The poll
scheduler retries by virtue of its next tick; one-shot CLI callers report
and exit.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Self

import httpx
import openai

from helloagain.codec.jsonl import encode_jsonl
from helloagain.contracts.enums import parse_remote_status
from helloagain.contracts.errors import PreconditionMissing, RemoteRejected, RemoteUnavailable
from helloagain.contracts.jobs import Job, JobCounts, RemoteJobSummary, RowContext
from helloagain.contracts.records import InferenceRequest
from helloagain.core.logging import get_logger

if TYPE_CHECKING:
    from helloagain.core.config import OpenAISettings

logger = get_logger(__name__)

BATCH_INPUT_FILENAME = "batch_input.jsonl"

API_KEY_PREFIXES: tuple[str, ...] = ("sk-", "sk-proj-")
API_KEY_MIN_LENGTH = 20

# Friendly messages for credential check failures, keyed by HTTP status.
_CREDENTIAL_MESSAGES: dict[int, str] = {
    401: "Invalid API key. Please check your key and try again.",
    403: "API key does not have the required permissions.",
    429: "Rate limit exceeded. Please try again in a moment.",
}


def check_api_key_format(api_key: str | None) -> str:
    """Return the trimmed key if it looks like an OpenAI key.

    Only the shape is checked; :meth:`BatchClient.verify_credentials` asks
    the remote whether the key actually works.

    Raises:
        PreconditionMissing: If the key is empty or malformed
    """
    if api_key is None or not api_key.strip():
        raise PreconditionMissing("API key is required")
    trimmed = api_key.strip()
    if not trimmed.startswith(API_KEY_PREFIXES):
        raise PreconditionMissing("Invalid API key format. OpenAI keys start with 'sk-' or 'sk-proj-'")
    if len(trimmed) < API_KEY_MIN_LENGTH:
        raise PreconditionMissing(f"Invalid API key format. Key is shorter than {API_KEY_MIN_LENGTH} characters")
    return trimmed


def _status_message(error: openai.APIStatusError) -> str:
    # The SDK unwraps {"error": {...}} into body; its own message embeds the raw payload.
    if isinstance(error.body, dict):
        message = error.body.get("message")
        if isinstance(message, str) and message:
            return message
    return error.message


@contextmanager
def _remote_call(operation: str, **context: Any) -> Iterator[None]:
    """Translate SDK exceptions into the pipeline's error taxonomy."""
    try:
        yield
    except openai.APIStatusError as e:
        logger.warning("Remote call rejected", operation=operation, status_code=e.status_code, **context)
        raise RemoteRejected(_status_message(e), status_code=e.status_code, payload=e.body) from e
    except openai.APIConnectionError as e:
        logger.warning("Remote call failed", operation=operation, error=str(e), **context)
        raise RemoteUnavailable(f"{operation} failed: {e}") from e
    except openai.APIError as e:
        # Response validation and stream errors: the remote answered, but not usably.
        logger.warning("Remote call returned an unusable response", operation=operation, error=str(e), error_type=type(e).__name__, **context)
        raise RemoteRejected(f"{operation} failed: {e.message}", payload=e.body) from e


def job_from_remote(batch: Any, *, polled_at: datetime | None = None) -> Job:
    """Map a remote batch object onto a Job.

    The remote status is taken verbatim.

    Raises:
        DecodeFailure: If the remote reports a status outside the known set
    """
    counts = batch.request_counts
    return Job(
        job_id=batch.id,
        created_at=datetime.fromtimestamp(batch.created_at, tz=UTC),
        status=parse_remote_status(batch.status),
        input_artifact_id=batch.input_file_id,
        output_artifact_id=batch.output_file_id,
        error_artifact_id=batch.error_file_id,
        counts=JobCounts(total=counts.total, completed=counts.completed, failed=counts.failed) if counts is not None else None,
        row_context=RowContext.from_remote_metadata(batch.metadata),
        last_polled_at=polled_at,
    )


class BatchClient:
    """Async client for one remote batch account."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        route: str = "/v1/chat/completions",
        completion_window: str = "24h",
        timeout: float = 60.0,
        max_retries: int = 0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize client.

        Args:
            api_key: Remote API key
            base_url: API base URL
            route: Endpoint every request in a batch targets
            completion_window: Batch completion window
            timeout: Per-request timeout in seconds
            max_retries: SDK retries per call
            http_client: Optional pre-configured httpx client
        """
        self._route = route
        self._completion_window = completion_window
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, settings: OpenAISettings, api_key: str) -> Self:
        return cls(
            api_key,
            base_url=settings.base_url,
            route=settings.route,
            completion_window=settings.completion_window,
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
        )

    async def submit(self, requests: Sequence[InferenceRequest], row_context: RowContext) -> Job:
        """Upload the batch input file and open a job on it.

        If opening fails after the upload succeeded, the uploaded file is
        left behind on the remote.

        Returns:
            The new Job in whatever state the remote reports
        """
        if not requests:
            raise PreconditionMissing("Cannot submit an empty batch")

        payload = encode_jsonl(request.to_wire() for request in requests).encode("utf-8")

        with _remote_call("files.create", request_count=len(requests)):
            input_file = await self._client.files.create(
                file=(BATCH_INPUT_FILENAME, payload),
                purpose="batch",
            )
        logger.info("Uploaded batch input", file_id=input_file.id, request_count=len(requests), size_bytes=len(payload))

        with _remote_call("batches.create", input_file_id=input_file.id):
            batch = await self._client.batches.create(
                input_file_id=input_file.id,
                endpoint=self._route,  # type: ignore[arg-type]  # configurable route, SDK types a Literal
                completion_window=self._completion_window,  # type: ignore[arg-type]
                metadata=row_context.to_remote_metadata(),
            )

        job = job_from_remote(batch)
        logger.info("Opened batch job", job_id=job.job_id, status=job.status.value)
        return replace(job, row_context=row_context)

    async def poll_status(self, job_id: str) -> Job:
        """Current remote view of a job. Active states are not errors."""
        with _remote_call("batches.retrieve", job_id=job_id):
            batch = await self._client.batches.retrieve(job_id)
        return job_from_remote(batch, polled_at=datetime.now(UTC))

    async def fetch_results_raw(self, artifact_id: str) -> str:
        """Raw JSONL text of an output or error file."""
        with _remote_call("files.content", file_id=artifact_id):
            content = await self._client.files.content(artifact_id)
        return content.text

    async def list_remote_jobs(self, limit: int = 20) -> list[RemoteJobSummary]:
        """Most recent jobs known to the remote, newest first."""
        with _remote_call("batches.list", limit=limit):
            page = await self._client.batches.list(limit=limit)

        summaries = []
        for batch in page.data:
            metadata = batch.metadata or {}
            summaries.append(
                RemoteJobSummary(
                    job_id=batch.id,
                    status=parse_remote_status(batch.status),
                    created_at=datetime.fromtimestamp(batch.created_at, tz=UTC),
                    description=metadata.get("description"),
                )
            )
        return summaries

    async def cancel(self, job_id: str) -> Job:
        """Ask the remote to cancel a job; it moves through ``cancelling``."""
        with _remote_call("batches.cancel", job_id=job_id):
            batch = await self._client.batches.cancel(job_id)
        return job_from_remote(batch, polled_at=datetime.now(UTC))

    async def verify_credentials(self) -> None:
        """Check the key against a cheap authenticated endpoint.

        Raises:
            RemoteRejected: With a user-facing message for 401/403/429
            RemoteUnavailable: If the remote cannot be reached
        """
        try:
            with _remote_call("models.list"):
                await self._client.models.list()
        except RemoteUnavailable:
            raise
        except RemoteRejected as e:
            if e.status_code is None:
                raise
            message = _CREDENTIAL_MESSAGES.get(e.status_code, f"API validation failed with status {e.status_code}")
            raise RemoteRejected(message, status_code=e.status_code, payload=e.payload) from e

    async def aclose(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()
