"""Row-level records: parsed contacts, compiled requests, results, enriched view.

None of these are persisted. RowRecords are re-parsed from the stored
archive on demand and EnrichedRows are recomputed on every merge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RowRecord:
    """One contact parsed from the connections table.

    A row has no intrinsic identifier: its zero-based position in the parsed
    table is the only thing that ties it to a batch result.
    """

    first_name: str
    last_name: str
    profile_url: str
    email_address: str | None = None
    company: str | None = None
    position: str | None = None
    connected_on: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "profile_url": self.profile_url,
            "email_address": self.email_address,
            "company": self.company,
            "position": self.position,
            "connected_on": self.connected_on,
        }


def correlation_id_for(index: int) -> str:
    """Correlation id for the row at zero-based ``index``."""
    return f"req-{index + 1}"


@dataclass(frozen=True)
class InferenceRequest:
    """One row's submission unit in the batch input file."""

    correlation_id: str
    method: str
    url: str
    body: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        """JSONL line object in the remote batch input format."""
        return {
            "custom_id": self.correlation_id,
            "method": self.method,
            "url": self.url,
            "body": self.body,
        }


@dataclass(frozen=True)
class ResultItem:
    """One line of a batch output document.

    ``content`` is the raw JSON string the model produced; it is parsed
    against the batch schema during merge, where a parse failure is
    isolated to the row.
    """

    correlation_id: str
    success: bool
    content: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class EnrichedRow:
    """A RowRecord joined with its batch result."""

    row: RowRecord
    enriched: bool
    extracted_payload: dict[str, Any] | None = None
    location: dict[str, Any] | None = None
    stats: dict[str, Any] | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.row.to_dict()
        data.update(
            {
                "location": self.location,
                "stats": self.stats,
                "enriched": self.enriched,
                "error": self.error_message,
            }
        )
        return data


@dataclass(frozen=True)
class MergeStats:
    """Aggregate counts over one merge."""

    total: int
    enriched: int
    with_location: int
    with_stats: int
    errors: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "enriched": self.enriched,
            "with_location": self.with_location,
            "with_stats": self.with_stats,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class MergeResult:
    """Output of Reconciler.merge."""

    enriched_rows: tuple[EnrichedRow, ...]
    stats: MergeStats

    def summary(self) -> str:
        """User-facing one-line outcome."""
        return f"Enriched {self.stats.enriched} of {self.stats.total} rows ({self.stats.errors} errors)"


@dataclass(frozen=True)
class ConnectionStats:
    """Summary of a parsed connections table."""

    total: int
    with_email: int
    with_company: int
    with_position: int
    recent: int
    recent_window_days: int = 30

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "with_email": self.with_email,
            "with_company": self.with_company,
            "with_position": self.with_position,
            "recent": self.recent,
        }


@dataclass(frozen=True)
class RowFilter:
    """Criteria for narrowing an enriched view. Unset criteria match everything."""

    only_enriched: bool = False
    only_with_location: bool = False
    only_with_stats: bool = False
    has_error: bool | None = None
    country: str | None = None
    city: str | None = None
