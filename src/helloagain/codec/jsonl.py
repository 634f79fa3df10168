"""Newline-delimited JSON encoding for batch input and output documents."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any

from helloagain.contracts.errors import DecodeFailure


def encode_jsonl(objects: Iterable[dict[str, Any]]) -> str:
    """One compact JSON object per line, newline-terminated."""
    return "".join(json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n" for obj in objects)


def iter_jsonl(text: str) -> Iterator[tuple[int, Any]]:
    """Yield (line_number, value) for each non-blank line.

    Line numbers are 1-based and count blank lines, so they match what an
    editor shows.

    Raises:
        DecodeFailure: On the first line that is not valid JSON
    """
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            yield line_number, json.loads(line)
        except json.JSONDecodeError as e:
            raise DecodeFailure(f"Invalid JSON: {e.msg}", line_number=line_number) from e
