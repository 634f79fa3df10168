# src/helloagain/codec/rows.py
"""Connections table codec.

Parses the LinkedIn ``Connections.csv`` export into RowRecords and writes
RowRecords back out in the same layout.

Export files carry a free-text preamble ("Notes: ...") above the real
header, so the header is located by content rather than position. Records
are one per line: quoted fields may contain the delimiter or doubled quotes,
but not line breaks.
"""

from __future__ import annotations

import csv
import io
import keyword
import re
import unicodedata
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

from helloagain.contracts.records import ConnectionStats, RowRecord
from helloagain.core.logging import get_logger

logger = get_logger(__name__)

# A line is the header when its fields include all of these.
HEADER_TOKENS: tuple[str, ...] = ("First Name", "Last Name")

# Export column label -> RowRecord field, in export order.
EXPORT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("First Name", "first_name"),
    ("Last Name", "last_name"),
    ("URL", "profile_url"),
    ("Email Address", "email_address"),
    ("Company", "company"),
    ("Position", "position"),
    ("Connected On", "connected_on"),
)

# Normalized header -> RowRecord field. Columns not listed are ignored.
_HEADER_FIELDS: dict[str, str] = {
    "first_name": "first_name",
    "last_name": "last_name",
    "url": "profile_url",
    "profile_url": "profile_url",
    "email_address": "email_address",
    "email": "email_address",
    "company": "company",
    "position": "position",
    "connected_on": "connected_on",
}

_REQUIRED_FIELDS: tuple[str, ...] = ("first_name", "last_name", "profile_url")

# LinkedIn writes "12 Mar 2024"; older exports and hand edits use the others.
_CONNECTED_ON_FORMATS: tuple[str, ...] = ("%d %b %Y", "%Y-%m-%d", "%m/%d/%Y")

_NON_IDENTIFIER_CHARS = re.compile(r"[^\w]+")
_CONSECUTIVE_UNDERSCORES = re.compile(r"_+")


def normalize_header(raw: str) -> str:
    """Normalize a header label to a snake_case identifier.

    Rules applied in order:
    1. Unicode NFC normalization
    2. Strip whitespace, lowercase
    3. Replace non-identifier chars with underscore, collapse runs
    4. Strip leading/trailing underscores
    5. Prefix with underscore if starts with digit
    6. Append underscore if result is a Python keyword

    "Email Address" -> "email_address", "URL" -> "url". Unlike source
    field normalization elsewhere, an empty result is returned as-is: a
    blank header column is simply never mapped.
    """
    normalized = unicodedata.normalize("NFC", raw).strip().lower()
    normalized = _NON_IDENTIFIER_CHARS.sub("_", normalized)
    normalized = _CONSECUTIVE_UNDERSCORES.sub("_", normalized)
    normalized = normalized.strip("_")
    if normalized and normalized[0].isdigit():
        normalized = f"_{normalized}"
    if keyword.iskeyword(normalized):
        normalized = f"{normalized}_"
    return normalized


def split_line(line: str) -> list[str]:
    """Split one CSV line into trimmed fields.

    Honors quoted fields containing the delimiter and the doubled-quote
    escape. Returns an empty list for a line the csv module rejects.
    """
    try:
        fields = next(csv.reader([line]), [])
    except csv.Error:
        return []
    return [field.strip() for field in fields]


def _is_header(fields: Sequence[str]) -> bool:
    return all(token in fields for token in HEADER_TOKENS)


def parse_rows(text: str) -> list[RowRecord]:
    """Parse connections CSV text into RowRecords.

    Lines above the header are discarded. Data lines whose field count does
    not match the header are skipped, not fatal. If no header line is found
    the result is empty.

    Args:
        text: Raw CSV text

    Returns:
        RowRecords in table order
    """
    lines = text.split("\n")

    header: list[str] | None = None
    start = 0
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        fields = split_line(line.strip())
        if _is_header(fields):
            header = fields
            start = index + 1
            break

    if header is None:
        logger.debug("No header line found", line_count=len(lines))
        return []

    # Column position -> RowRecord field; first occurrence of a field wins.
    positions: dict[str, int] = {}
    for position, label in enumerate(header):
        field_name = _HEADER_FIELDS.get(normalize_header(label))
        if field_name is not None and field_name not in positions:
            positions[field_name] = position

    rows: list[RowRecord] = []
    skipped = 0
    for line in lines[start:]:
        stripped = line.strip()
        if not stripped:
            continue
        values = split_line(stripped)
        if len(values) != len(header):
            skipped += 1
            continue
        rows.append(_build_row(values, positions))

    if skipped:
        logger.debug("Skipped rows with mismatched field count", skipped=skipped, expected_fields=len(header))
    return rows


def _build_row(values: Sequence[str], positions: dict[str, int]) -> RowRecord:
    data: dict[str, str | None] = {}
    for field_name, position in positions.items():
        value = values[position]
        if field_name in _REQUIRED_FIELDS:
            data[field_name] = value
        else:
            data[field_name] = value or None
    for field_name in _REQUIRED_FIELDS:
        data.setdefault(field_name, "")
    return RowRecord(**data)  # type: ignore[arg-type]  # required fields are always str


def serialize_rows_csv(rows: Iterable[RowRecord]) -> str:
    """Write RowRecords as a connections table with the export header.

    Optional fields that are None become empty cells.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([label for label, _ in EXPORT_COLUMNS])
    for row in rows:
        writer.writerow([getattr(row, field_name) or "" for _, field_name in EXPORT_COLUMNS])
    return buffer.getvalue()


def parse_connected_on(value: str | None) -> datetime | None:
    """Parse a Connected On cell, or None if absent or unrecognized."""
    if not value:
        return None
    for fmt in _CONNECTED_ON_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


def summarize_rows(
    rows: Sequence[RowRecord],
    *,
    now: datetime | None = None,
    recent_window_days: int = 30,
) -> ConnectionStats:
    """Count populated optional fields and recent connections."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=recent_window_days)

    recent = 0
    for row in rows:
        connected = parse_connected_on(row.connected_on)
        if connected is not None and connected >= cutoff:
            recent += 1

    return ConnectionStats(
        total=len(rows),
        with_email=sum(1 for row in rows if row.email_address),
        with_company=sum(1 for row in rows if row.company),
        with_position=sum(1 for row in rows if row.position),
        recent=recent,
        recent_window_days=recent_window_days,
    )
