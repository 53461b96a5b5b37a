# src/services/importer.py — v1
"""Bring NDJSON into a job: copy from a local directory or download a URL."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import httpx

from aether.core.errors import ClassifiedError, classify, file_not_found
from aether.core.ndjson import MAX_BUNDLE_LINE_BYTES, count_records
from aether.services.http_client import download_to_file

logger = logging.getLogger(__name__)


@dataclass
class ImportedFile:
    path: Path
    size: int
    records: int


def find_ndjson_files(root: Path) -> list[Path]:
    """All ``*.ndjson`` files below ``root``, sorted for a stable order."""
    return sorted(p for p in root.rglob("*.ndjson") if p.is_file())


def _unique_destination(dest_dir: Path, name: str) -> Path:
    dest = dest_dir / name
    counter = 1
    while dest.exists():
        dest = dest_dir / f"{Path(name).stem}_{counter}.ndjson"
        counter += 1
    return dest


def import_local_directory(source: Path, dest_dir: Path) -> list[ImportedFile]:
    """Copy every NDJSON file found recursively in ``source``.

    Raises:
        ClassifiedError: filesystem error when ``source`` is missing,
            validation error when it holds no NDJSON files.
    """
    if not source.is_dir():
        raise file_not_found(str(source))
    files = find_ndjson_files(source)
    if not files:
        raise ClassifiedError(
            "validation",
            f"No NDJSON files found in {source}",
            guidance=[
                "Ensure the directory contains files ending in .ndjson",
                "Subdirectories are searched as well",
            ],
        )

    dest_dir.mkdir(parents=True, exist_ok=True)
    imported: list[ImportedFile] = []
    for src in files:
        dest = _unique_destination(dest_dir, src.name)
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            raise classify(e) from e
        records = count_records(dest, MAX_BUNDLE_LINE_BYTES)
        imported.append(ImportedFile(dest, dest.stat().st_size, records))
        logger.debug("Imported %s", src)
    logger.info("Imported %d files from %s", len(imported), source)
    return imported


def filename_from_url(url: str) -> str:
    """Local file name for a download; ``.ndjson`` is enforced."""
    name = Path(urlsplit(url).path).name or "download"
    if not name.endswith(".ndjson"):
        name = Path(name).stem + ".ndjson" if "." in name else name + ".ndjson"
    return name


async def import_from_url(client: httpx.AsyncClient, url: str, dest_dir: Path) -> ImportedFile:
    """Stream one NDJSON file from ``url`` into ``dest_dir``."""
    dest = dest_dir / filename_from_url(url)
    size = await download_to_file(client, url, dest, service="HTTP source")
    return ImportedFile(dest, size, count_records(dest, MAX_BUNDLE_LINE_BYTES))
