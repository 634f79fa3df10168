"""Batch job records held in the job ledger."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from helloagain.contracts.enums import JobStatus, parse_remote_status
from helloagain.contracts.errors import DecodeFailure


@dataclass(frozen=True)
class JobCounts:
    """Per-request progress reported by the remote service."""

    total: int
    completed: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "completed": self.completed, "failed": self.failed}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobCounts:
        return cls(total=int(data["total"]), completed=int(data["completed"]), failed=int(data["failed"]))


@dataclass(frozen=True)
class RowContext:
    """What the job was built from, recorded at submit time.

    Attributes:
        row_count: Rows compiled into the job (after any limit)
        description: Human-readable description
        total_rows: Rows in the source table before the limit was applied
    """

    row_count: int
    description: str
    total_rows: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"row_count": self.row_count, "description": self.description, "total_rows": self.total_rows}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowContext:
        total_rows = data.get("total_rows")
        return cls(
            row_count=int(data["row_count"]),
            description=str(data["description"]),
            total_rows=int(total_rows) if total_rows is not None else None,
        )

    def to_remote_metadata(self) -> dict[str, str]:
        """Remote metadata values must be strings."""
        metadata = {
            "description": self.description,
            "processed_connections": str(self.row_count),
        }
        if self.total_rows is not None:
            metadata["total_connections"] = str(self.total_rows)
        return metadata

    @classmethod
    def from_remote_metadata(cls, metadata: dict[str, Any] | None) -> RowContext | None:
        """Recover a RowContext from remote job metadata, if it carries one."""
        if not metadata or "processed_connections" not in metadata:
            return None
        try:
            row_count = int(metadata["processed_connections"])
            total = metadata.get("total_connections")
            total_rows = int(total) if total is not None else None
        except (TypeError, ValueError):
            return None
        return cls(
            row_count=row_count,
            description=str(metadata.get("description", "")),
            total_rows=total_rows,
        )


@dataclass(frozen=True)
class Job:
    """One remote batch job as known to the ledger.

    Created once on submit (or on explicit reattach) and afterwards changed
    only by applying a remote status report. The local side never invents a
    status transition.
    """

    job_id: str
    created_at: datetime
    status: JobStatus
    input_artifact_id: str
    output_artifact_id: str | None = None
    error_artifact_id: str | None = None
    counts: JobCounts | None = None
    row_context: RowContext | None = None
    last_polled_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def apply_remote(self, report: Job, *, polled_at: datetime | None = None) -> Job:
        """Merge a fresh remote report onto this record.

        Status, counts and artifact ids come from the report. Identity,
        creation time and the locally recorded row context are kept.
        """
        if report.job_id != self.job_id:
            raise ValueError(f"Cannot apply report for job {report.job_id!r} to job {self.job_id!r}")
        return replace(
            self,
            status=report.status,
            counts=report.counts if report.counts is not None else self.counts,
            output_artifact_id=report.output_artifact_id or self.output_artifact_id,
            error_artifact_id=report.error_artifact_id or self.error_artifact_id,
            row_context=self.row_context or report.row_context,
            last_polled_at=polled_at or report.last_polled_at or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "input_artifact_id": self.input_artifact_id,
            "output_artifact_id": self.output_artifact_id,
            "error_artifact_id": self.error_artifact_id,
            "counts": self.counts.to_dict() if self.counts is not None else None,
            "row_context": self.row_context.to_dict() if self.row_context is not None else None,
            "last_polled_at": self.last_polled_at.isoformat() if self.last_polled_at is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Rebuild a Job from its stored form.

        Raises:
            DecodeFailure: If the stored record is missing fields or holds
                an unknown status
        """
        try:
            counts = data.get("counts")
            row_context = data.get("row_context")
            last_polled = data.get("last_polled_at")
            return cls(
                job_id=data["job_id"],
                created_at=datetime.fromisoformat(data["created_at"]),
                status=parse_remote_status(data["status"]),
                input_artifact_id=data["input_artifact_id"],
                output_artifact_id=data.get("output_artifact_id"),
                error_artifact_id=data.get("error_artifact_id"),
                counts=JobCounts.from_dict(counts) if counts is not None else None,
                row_context=RowContext.from_dict(row_context) if row_context is not None else None,
                last_polled_at=datetime.fromisoformat(last_polled) if last_polled is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeFailure(f"Stored job record is malformed: {e}") from e


@dataclass(frozen=True)
class RemoteJobSummary:
    """A job as listed by the remote service, used for reattach."""

    job_id: str
    status: JobStatus
    created_at: datetime
    description: str | None = None


@dataclass(frozen=True)
class ReattachCandidate:
    """A remote job annotated with whether the ledger already knows it."""

    summary: RemoteJobSummary
    already_imported: bool
