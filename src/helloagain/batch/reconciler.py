# src/helloagain/batch/reconciler.py
"""Align batch results back onto the rows they were compiled from.

Results arrive unordered and keyed by correlation id; rows are ordered and
keyed by nothing but their position. The join walks the rows in order,
derives ``req-<i+1>`` for each, and looks the id up in the result set.

Three row outcomes:
- absent: no result line for the id. Not enriched, no error. The row may
  simply not have been part of this job (submit with a row limit).
- failed: the line is an error. Not enriched, error message kept.
- succeeded: the model output is parsed. Enriched iff it carries a ``loc``
  or ``stats`` object.

A document that is not valid JSONL fails the whole decode; one row's bad
model output only fails that row.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from helloagain.codec.jsonl import iter_jsonl
from helloagain.contracts.errors import DecodeFailure
from helloagain.contracts.records import (
    EnrichedRow,
    MergeResult,
    MergeStats,
    ResultItem,
    RowFilter,
    RowRecord,
    correlation_id_for,
)

# Result lines come in the remote's spelling (custom_id, status_code) or
# the camelCase spelling used by exported fixtures.


class _LineError(BaseModel):
    code: str | None = None
    message: str | None = None


class _Message(BaseModel):
    content: str | None = None


class _Choice(BaseModel):
    message: _Message | None = None


class _ResponseBody(BaseModel):
    choices: list[_Choice] = Field(default_factory=list)
    error: _LineError | None = None


class _Response(BaseModel):
    status_code: int = Field(validation_alias=AliasChoices("status_code", "statusCode"))
    body: _ResponseBody | None = None


class _ResultLine(BaseModel):
    correlation_id: str = Field(validation_alias=AliasChoices("custom_id", "correlationId"))
    response: _Response | None = None
    error: _LineError | None = None


def _item_from_line(line: _ResultLine) -> ResultItem:
    if line.error is not None:
        message = line.error.message or line.error.code or "Unknown error"
        return ResultItem(correlation_id=line.correlation_id, success=False, error_message=message)

    response = line.response
    if response is None:
        return ResultItem(correlation_id=line.correlation_id, success=False, error_message="No response")

    if response.status_code != 200:
        message = f"HTTP {response.status_code}"
        if response.body is not None and response.body.error is not None and response.body.error.message:
            message = f"{message}: {response.body.error.message}"
        return ResultItem(correlation_id=line.correlation_id, success=False, error_message=message)

    content = None
    if response.body is not None and response.body.choices:
        first = response.body.choices[0].message
        content = first.content if first is not None else None
    if not content:
        return ResultItem(correlation_id=line.correlation_id, success=False, error_message="No content in response")

    return ResultItem(correlation_id=line.correlation_id, success=True, content=content)


def decode_results(raw: str) -> list[ResultItem]:
    """Decode a result document into ResultItems, in line order.

    Raises:
        DecodeFailure: If any line is not JSON, not an object, or lacks a
            correlation id. The whole document is rejected.
    """
    items: list[ResultItem] = []
    for line_number, value in iter_jsonl(raw):
        if not isinstance(value, dict):
            raise DecodeFailure(f"Expected a JSON object, got {type(value).__name__}", line_number=line_number)
        try:
            line = _ResultLine.model_validate(value)
        except ValidationError as e:
            raise DecodeFailure(f"Malformed result line: {e}", line_number=line_number) from e
        items.append(_item_from_line(line))
    return items


def _enrich(row: RowRecord, item: ResultItem | None) -> EnrichedRow:
    if item is None:
        return EnrichedRow(row=row, enriched=False)

    if not item.success or item.content is None:
        return EnrichedRow(row=row, enriched=False, error_message=item.error_message or "Request failed")

    try:
        document = json.loads(item.content)
    except json.JSONDecodeError as e:
        return EnrichedRow(row=row, enriched=False, error_message=f"Invalid JSON content: {e.msg}")

    if not isinstance(document, dict):
        return EnrichedRow(
            row=row,
            enriched=False,
            error_message=f"Invalid JSON content: expected an object, got {type(document).__name__}",
        )

    # An empty object still counts as present.
    location = document.get("loc") if isinstance(document.get("loc"), dict) else None
    stats = document.get("stats") if isinstance(document.get("stats"), dict) else None
    return EnrichedRow(
        row=row,
        enriched=location is not None or stats is not None,
        extracted_payload=document,
        location=location,
        stats=stats,
    )


def merge_items(rows: Sequence[RowRecord], items: Iterable[ResultItem]) -> MergeResult:
    """Join decoded result items onto rows.

    Duplicate correlation ids are last-write-wins in iteration order.
    """
    by_id: dict[str, ResultItem] = {}
    for item in items:
        by_id[item.correlation_id] = item

    enriched_rows = tuple(_enrich(row, by_id.get(correlation_id_for(index))) for index, row in enumerate(rows))

    stats = MergeStats(
        total=len(enriched_rows),
        enriched=sum(1 for r in enriched_rows if r.enriched),
        with_location=sum(1 for r in enriched_rows if r.location is not None),
        with_stats=sum(1 for r in enriched_rows if r.stats is not None),
        errors=sum(1 for r in enriched_rows if r.error_message),
    )
    return MergeResult(enriched_rows=enriched_rows, stats=stats)


def merge(rows: Sequence[RowRecord], raw: str) -> MergeResult:
    """Decode a raw result document and join it onto rows.

    Pure: re-running on the same inputs gives the same result, and the
    order of lines in raw does not matter (up to duplicate ids). The output
    always has exactly one EnrichedRow per input row.

    Raises:
        DecodeFailure: If raw is not a valid result document
    """
    return merge_items(rows, decode_results(raw))


def _location_value(row: EnrichedRow, key: str) -> Any:
    return row.location.get(key) if row.location is not None else None


def filter_enriched(rows: Iterable[EnrichedRow], criteria: RowFilter) -> list[EnrichedRow]:
    """Rows matching every set criterion."""
    matched = []
    for row in rows:
        if criteria.only_enriched and not row.enriched:
            continue
        if criteria.only_with_location and row.location is None:
            continue
        if criteria.only_with_stats and row.stats is None:
            continue
        if criteria.has_error is not None and bool(row.error_message) != criteria.has_error:
            continue
        if criteria.country and _location_value(row, "country") != criteria.country:
            continue
        if criteria.city and _location_value(row, "city") != criteria.city:
            continue
        matched.append(row)
    return matched


def unique_countries(rows: Iterable[EnrichedRow]) -> list[str]:
    """Sorted distinct non-empty countries."""
    return sorted({value for row in rows if isinstance(value := _location_value(row, "country"), str) and value})


def unique_cities(rows: Iterable[EnrichedRow]) -> list[str]:
    """Sorted distinct non-empty cities."""
    return sorted({value for row in rows if isinstance(value := _location_value(row, "city"), str) and value})
