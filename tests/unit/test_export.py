"""Tests for enriched view CSV and JSON output."""

import csv
import io
import json

from helloagain.contracts.records import EnrichedRow, RowRecord
from helloagain.export import CSV_HEADERS, to_csv, to_json

ANN = RowRecord(
    first_name="Ann",
    last_name="Lee",
    profile_url="https://www.linkedin.com/in/annlee",
    email_address="ann@example.com",
    company="Acme, Inc.",
    position="Eng",
    connected_on="12 Mar 2024",
)
BOB = RowRecord(first_name="Bob", last_name="Stone", profile_url="https://www.linkedin.com/in/bobstone")

ROWS = [
    EnrichedRow(
        row=ANN,
        enriched=True,
        extracted_payload={},
        location={"city": "Austin", "country": "US", "lat": 30.27, "lng": -97.74},
        stats={"conn": 500, "foll": None},
    ),
    EnrichedRow(row=BOB, enriched=False, error_message="HTTP 500"),
]


class TestToCsv:
    def test_header_and_cells(self) -> None:
        parsed = list(csv.reader(io.StringIO(to_csv(ROWS))))

        assert tuple(parsed[0]) == CSV_HEADERS
        assert parsed[1] == [
            "Ann",
            "Lee",
            "Acme, Inc.",
            "Eng",
            "ann@example.com",
            "https://www.linkedin.com/in/annlee",
            "12 Mar 2024",
            "Austin",
            "US",
            "30.27",
            "-97.74",
            "500",
            "",
            "Yes",
            "",
        ]
        assert parsed[2][-2:] == ["No", "HTTP 500"]
        assert parsed[2][7:13] == ["", "", "", "", "", ""]

    def test_empty_view_is_header_only(self) -> None:
        assert to_csv([]) == ",".join(CSV_HEADERS) + "\n"


class TestToJson:
    def test_objects(self) -> None:
        data = json.loads(to_json(ROWS))

        assert data[0]["first_name"] == "Ann"
        assert data[0]["location"]["city"] == "Austin"
        assert data[0]["enriched"] is True
        assert data[0]["error"] is None
        assert data[1]["location"] is None
        assert data[1]["error"] == "HTTP 500"

    def test_non_ascii_kept(self) -> None:
        row = EnrichedRow(row=RowRecord(first_name="Zoë", last_name="Ørsted", profile_url="u"), enriched=False)

        assert "Zoë" in to_json([row])
