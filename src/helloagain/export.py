"""Enriched view output formats."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable
from typing import Any

from helloagain.contracts.records import EnrichedRow

CSV_HEADERS: tuple[str, ...] = (
    "First Name",
    "Last Name",
    "Company",
    "Position",
    "Email",
    "URL",
    "Connected On",
    "City",
    "Country",
    "Latitude",
    "Longitude",
    "Connections",
    "Followers",
    "Enriched",
    "Error",
)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _nested(mapping: dict[str, Any] | None, key: str) -> str:
    return _cell(mapping.get(key)) if mapping is not None else ""


def to_csv(rows: Iterable[EnrichedRow]) -> str:
    """Flat CSV, one line per row, in the fixed column order."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for enriched in rows:
        row = enriched.row
        writer.writerow(
            [
                row.first_name,
                row.last_name,
                _cell(row.company),
                _cell(row.position),
                _cell(row.email_address),
                row.profile_url,
                _cell(row.connected_on),
                _nested(enriched.location, "city"),
                _nested(enriched.location, "country"),
                _nested(enriched.location, "lat"),
                _nested(enriched.location, "lng"),
                _nested(enriched.stats, "conn"),
                _nested(enriched.stats, "foll"),
                "Yes" if enriched.enriched else "No",
                _cell(enriched.error_message),
            ]
        )
    return buffer.getvalue()


def to_json(rows: Iterable[EnrichedRow]) -> str:
    """Indented JSON array of enriched row objects."""
    return json.dumps([row.to_dict() for row in rows], indent=2, ensure_ascii=False)
