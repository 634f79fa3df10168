"""Status codes used across subsystem boundaries.

JobStatus is a closed set. Remote status strings outside it are a decode
failure, never passed through, so the ledger never stores an undefined state.
"""

from enum import StrEnum

from helloagain.contracts.errors import DecodeFailure


class JobStatus(StrEnum):
    """Status of a remote batch job.

    Stored in the job ledger. Values mirror the remote service vocabulary
    1:1, plus SUBMITTED for a job that has been opened but not yet reported.
    """

    SUBMITTED = "submitted"
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        """Whether the remote service is still working on the job."""
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Whether the job has been permanently resolved."""
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.SUBMITTED,
        JobStatus.VALIDATING,
        JobStatus.IN_PROGRESS,
        JobStatus.FINALIZING,
        JobStatus.CANCELLING,
    }
)

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.EXPIRED,
        JobStatus.CANCELLED,
    }
)


def parse_remote_status(value: object) -> JobStatus:
    """Map a remote status string onto JobStatus.

    Args:
        value: Status as reported by the remote service

    Returns:
        The matching JobStatus

    Raises:
        DecodeFailure: If the value is not part of the known vocabulary
    """
    if not isinstance(value, str):
        raise DecodeFailure(f"Remote job status must be a string, got {type(value).__name__}")
    try:
        return JobStatus(value)
    except ValueError:
        raise DecodeFailure(f"Unrecognized remote job status: {value!r}") from None
