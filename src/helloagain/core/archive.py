"""Locate the connections table inside a LinkedIn data export archive."""

from __future__ import annotations

import io
import zipfile

from helloagain.contracts.errors import PreconditionMissing
from helloagain.core.logging import get_logger

logger = get_logger(__name__)

PRIMARY_TABLE_NAME = "connections.csv"

# Conventional locations in LinkedIn exports, tried in order before the
# fallback search.
CONVENTIONAL_PATHS: tuple[str, ...] = (
    "Connections.csv",
    "connections.csv",
    "data/Connections.csv",
    "Data/Connections.csv",
)


def _decode_member(data: bytes) -> str:
    # Exports are UTF-8, some with a BOM.
    return data.decode("utf-8-sig", errors="replace")


def extract_primary_table(blob: bytes) -> str | None:
    """Return the connections CSV text from an export archive.

    Tries the conventional paths first, then any member whose name ends in
    ``connections.csv`` (case-insensitive) at any depth.

    Args:
        blob: Raw bytes of the uploaded archive

    Returns:
        CSV text, or None when the archive has no connections table

    Raises:
        PreconditionMissing: If blob is not a readable ZIP archive
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(blob))
    except zipfile.BadZipFile as e:
        raise PreconditionMissing(f"Uploaded file is not a valid ZIP archive: {e}") from e

    with archive:
        names = [name for name in archive.namelist() if not name.endswith("/")]
        available = set(names)

        for path in CONVENTIONAL_PATHS:
            if path in available:
                logger.debug("Found connections table", member=path)
                return _decode_member(archive.read(path))

        for name in sorted(names):
            if name.lower().endswith(PRIMARY_TABLE_NAME):
                logger.debug("Found connections table by search", member=name)
                return _decode_member(archive.read(name))

    logger.info("No connections table in archive", member_count=len(names))
    return None
