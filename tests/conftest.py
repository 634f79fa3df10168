# tests/conftest.py
"""Shared test fixtures and helpers.

Fixtures:
- store / ledger: in-memory SQLite store and a ledger over it
- connections_csv: a LinkedIn-style export with the usual "Notes:" preamble
- export_zip: that CSV packed the way LinkedIn packs it

Helpers:
- make_job: Job factory with sensible defaults
- make_zip: build a ZIP archive from {member_name: text}
- result_line: one OpenAI batch output line

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import io
import json
import os
import zipfile
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from helloagain.batch.ledger import JobLedger
from helloagain.contracts.enums import JobStatus
from helloagain.contracts.jobs import Job, JobCounts, RowContext
from helloagain.core.store import SQLiteStore

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Sample data
# =============================================================================

CONNECTIONS_CSV = "\n".join(
    [
        "Notes:",
        '"When exporting your connection data, you may notice that some of the email addresses are missing."',
        "",
        "First Name,Last Name,URL,Email Address,Company,Position,Connected On",
        "Ann,Lee,https://www.linkedin.com/in/annlee,ann@example.com,Acme,Eng,12 Mar 2024",
        'Bob,Stone,https://www.linkedin.com/in/bobstone,,"Stone, Stone & Partners","Partner, ""Senior""",01 Jan 2020',
        "Cara,Diaz,https://www.linkedin.com/in/caradiaz,,,,05 Jun 2023",
        "",
    ]
)

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def make_zip(members: dict[str, str | bytes]) -> bytes:
    """Build a ZIP archive in memory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_job(
    job_id: str = "batch_abc",
    status: JobStatus = JobStatus.IN_PROGRESS,
    *,
    created_at: datetime | None = None,
    output_artifact_id: str | None = None,
    error_artifact_id: str | None = None,
    counts: JobCounts | None = None,
    row_context: RowContext | None = None,
) -> Job:
    return Job(
        job_id=job_id,
        created_at=created_at or BASE_TIME,
        status=status,
        input_artifact_id=f"file-in-{job_id}",
        output_artifact_id=output_artifact_id,
        error_artifact_id=error_artifact_id,
        counts=counts,
        row_context=row_context,
    )


def chat_body(content: str | None) -> dict[str, Any]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


def result_line(custom_id: str, content: str | None = None, *, status_code: int = 200, error: dict[str, Any] | None = None) -> str:
    """One output-file line in the remote's spelling."""
    line: dict[str, Any] = {"id": f"batch_req_{custom_id}", "custom_id": custom_id}
    if error is not None:
        line["response"] = None
        line["error"] = error
    else:
        line["response"] = {"status_code": status_code, "request_id": "req_x", "body": chat_body(content)}
        line["error"] = None
    return json.dumps(line)


def profile_content(city: str | None = "Austin", country: str | None = "US", conn: int | None = 500) -> str:
    return json.dumps(
        {
            "loc": {"city": city, "country": country, "lat": 30.27, "lng": -97.74},
            "stats": {"conn": conn, "foll": 800},
        }
    )


@pytest.fixture
def connections_csv() -> str:
    return CONNECTIONS_CSV


@pytest.fixture
def export_zip() -> bytes:
    return make_zip({"Connections.csv": CONNECTIONS_CSV, "Profile.csv": "First Name,Last Name\nMe,Myself\n"})


@pytest.fixture
def store() -> Iterator[SQLiteStore]:
    with SQLiteStore.in_memory() as db:
        yield db


@pytest.fixture
def ledger(store: SQLiteStore) -> JobLedger:
    return JobLedger(store)


@pytest.fixture
def staggered_times() -> list[datetime]:
    """Four creation times, oldest first."""
    return [BASE_TIME + timedelta(hours=hours) for hours in range(4)]
