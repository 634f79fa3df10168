"""Tests for locating the connections table in an export archive."""

import pytest
from conftest import make_zip

from helloagain.contracts.errors import PreconditionMissing
from helloagain.core.archive import extract_primary_table


class TestExtractPrimaryTable:
    def test_conventional_path(self, export_zip: bytes, connections_csv: str) -> None:
        assert extract_primary_table(export_zip) == connections_csv

    def test_conventional_paths_take_priority(self) -> None:
        blob = make_zip({"archive/old/connections.csv": "old", "data/Connections.csv": "new"})

        assert extract_primary_table(blob) == "new"

    def test_falls_back_to_search(self) -> None:
        blob = make_zip({"Basic_LinkedInDataExport_06-01-2024/Connections.csv": "found", "Profile.csv": "x"})

        assert extract_primary_table(blob) == "found"

    def test_search_is_case_insensitive(self) -> None:
        blob = make_zip({"export/CONNECTIONS.CSV": "upper"})

        assert extract_primary_table(blob) == "upper"

    def test_byte_order_mark_stripped(self) -> None:
        blob = make_zip({"Connections.csv": "\ufeffFirst Name,Last Name\n".encode()})

        assert extract_primary_table(blob) == "First Name,Last Name\n"

    def test_absent_table(self) -> None:
        assert extract_primary_table(make_zip({"Profile.csv": "x", "Messages.csv": "y"})) is None

    def test_not_a_zip(self) -> None:
        with pytest.raises(PreconditionMissing, match="not a valid ZIP"):
            extract_primary_table(b"First Name,Last Name\n")
