"""Shared contracts: records, job model, status enum and error taxonomy.

Leaf package: contracts import nothing else from helloagain, so every other
module can depend on them without cycles.
"""

from helloagain.contracts.enums import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    parse_remote_status,
)
from helloagain.contracts.errors import (
    DecodeFailure,
    HelloAgainError,
    PreconditionMissing,
    RemoteRejected,
    RemoteUnavailable,
    SchemaInvalid,
    SchemaViolation,
)
from helloagain.contracts.jobs import (
    Job,
    JobCounts,
    ReattachCandidate,
    RemoteJobSummary,
    RowContext,
)
from helloagain.contracts.records import (
    ConnectionStats,
    EnrichedRow,
    InferenceRequest,
    MergeResult,
    MergeStats,
    ResultItem,
    RowFilter,
    RowRecord,
    correlation_id_for,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ConnectionStats",
    "DecodeFailure",
    "EnrichedRow",
    "HelloAgainError",
    "InferenceRequest",
    "Job",
    "JobCounts",
    "JobStatus",
    "MergeResult",
    "MergeStats",
    "PreconditionMissing",
    "ReattachCandidate",
    "RemoteJobSummary",
    "RemoteRejected",
    "RemoteUnavailable",
    "ResultItem",
    "RowContext",
    "RowFilter",
    "RowRecord",
    "SchemaInvalid",
    "SchemaViolation",
    "correlation_id_for",
    "parse_remote_status",
]
