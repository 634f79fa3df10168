"""Error taxonomy for the enrichment pipeline.

Propagation policy:
- PreconditionMissing and SchemaInvalid abort before any network call.
- RemoteRejected surfaces to the caller, who decides retry vs. abort.
- DecodeFailure is fatal to the one fetch or merge call that hit it.
- Per-row failures are NOT exceptions: they land on the EnrichedRow and
  are counted in MergeStats.errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class HelloAgainError(Exception):
    """Base class for all expected, user-reportable failures."""


class PreconditionMissing(HelloAgainError):
    """A required input (archive, connections table, API key) is absent.

    User-recoverable: the message is surfaced verbatim.
    """


@dataclass(frozen=True)
class SchemaViolation:
    """One node of a batch schema that breaks the strict-mode invariant."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class SchemaInvalid(HelloAgainError):
    """Batch schema violates the strict-mode invariant.

    Raised by the request compiler before any request is produced, so a
    schema the remote would reject wholesale never leaves the process.

    Attributes:
        violations: Every offending node, in traversal order
    """

    def __init__(self, violations: list[SchemaViolation]) -> None:
        self.violations = list(violations)
        details = "; ".join(str(v) for v in self.violations)
        super().__init__(f"Batch schema is not strict-mode compliant ({len(self.violations)} violation(s)): {details}")

    @property
    def paths(self) -> list[str]:
        """Offending node paths, in traversal order."""
        return [v.path for v in self.violations]


class RemoteRejected(HelloAgainError):
    """Remote service returned a non-success response.

    Attributes:
        status_code: HTTP status code, or None when no response was received
        message: Remote error message (or transport error description)
        payload: Raw remote error payload, kept for diagnosis
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.payload = payload
        prefix = f"HTTP {status_code}: " if status_code is not None else ""
        super().__init__(f"{prefix}{message}")


class RemoteUnavailable(RemoteRejected):
    """Remote service could not be reached (connection error, timeout)."""


class DecodeFailure(HelloAgainError):
    """A remote document could not be decoded.

    Attributes:
        line_number: 1-based line in a newline-delimited document, if known
    """

    def __init__(self, message: str, *, line_number: int | None = None) -> None:
        self.line_number = line_number
        if line_number is not None:
            message = f"Line {line_number}: {message}"
        super().__init__(message)
