"""File-tree diff: local scan, remote listing, and the download/delete plan."""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from backend.exceptions import AuthError, RemoteListingError, SyncError
from backend.services.datetime_service import format_iso, parse_timestamp
from backend.services.transport import replication_path

if TYPE_CHECKING:
    from backend.services.transport import TransportClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILES = 10000


@dataclass
class FileRecord:
    """Represents a file's state on one side of a sync."""

    relative_path: str
    size: int
    content_hash: str
    modified_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        """Build a record from a peer listing entry. Raises ValueError when malformed."""
        path = data.get("relative_path")
        content_hash = data.get("hash")
        if not isinstance(path, str) or not path:
            raise ValueError(f"Listing entry without a path: {data!r}")
        if not isinstance(content_hash, str):
            raise ValueError(f"Listing entry without a hash: {data!r}")
        return cls(
            relative_path=path,
            size=int(data.get("size") or 0),
            content_hash=content_hash,
            modified_at=parse_timestamp(data.get("modified")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the peer listing format."""
        return {
            "relative_path": self.relative_path,
            "size": self.size,
            "hash": self.content_hash,
            "modified": format_iso(self.modified_at) if self.modified_at else None,
        }


@dataclass
class SyncPlan:
    """What a directory sync has to do."""

    to_download: list[FileRecord] = field(default_factory=list)
    to_delete: list[FileRecord] = field(default_factory=list)
    unchanged_count: int = 0


def hash_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha.update(chunk)
    return sha.hexdigest()


def scan_local(
    root: Path,
    *,
    max_files: int = DEFAULT_MAX_FILES,
    include: Callable[[str], bool] | None = None,
) -> list[FileRecord]:
    """Scan ``root`` recursively, skipping dotfiles and dot-directories.

    Stops after ``max_files`` records. ``include`` filters relative paths
    before they are hashed.
    """
    records: list[FileRecord] = []
    if not root.is_dir():
        return records
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for filename in sorted(files):
            if filename.startswith("."):
                continue
            full = Path(current) / filename
            rel = full.relative_to(root).as_posix()
            if include is not None and not include(rel):
                continue
            if len(records) >= max_files:
                logger.warning("Scan of %s stopped at %d files", root, max_files)
                return records
            try:
                stat = full.stat()
                digest = hash_file(full)
            except OSError as exc:
                logger.warning("Cannot read %s during scan: %s", full, exc)
                continue
            records.append(
                FileRecord(
                    relative_path=rel,
                    size=stat.st_size,
                    content_hash=digest,
                    modified_at=parse_timestamp(stat.st_mtime),
                )
            )
    return records


async def fetch_remote(
    transport: TransportClient,
    directory_key: str,
    timeout: float | None = None,
) -> list[FileRecord]:
    """Fetch the source's listing of ``directory_key``.

    Raises RemoteListingError on any failure other than a rejected token;
    there is no local substitute for the remote state.
    """
    try:
        data = await transport.get_json(
            replication_path("files"), {"directory": directory_key}, timeout=timeout
        )
    except AuthError:
        raise
    except SyncError as exc:
        raise RemoteListingError(f"Could not list {directory_key} on source: {exc}") from exc

    if not isinstance(data, list):
        raise RemoteListingError(f"Malformed file listing for {directory_key}")
    try:
        return [FileRecord.from_dict(item) for item in data]
    except (ValueError, TypeError, AttributeError) as exc:
        raise RemoteListingError(f"Malformed file listing for {directory_key}: {exc}") from exc


def diff(source: list[FileRecord], local: list[FileRecord]) -> SyncPlan:
    """Compare the source and local populations by path and content hash."""
    plan = SyncPlan()
    local_by_path = {record.relative_path: record for record in local}
    source_paths: set[str] = set()

    for record in source:
        source_paths.add(record.relative_path)
        existing = local_by_path.get(record.relative_path)
        if existing is not None and existing.content_hash == record.content_hash:
            plan.unchanged_count += 1
        else:
            plan.to_download.append(record)

    plan.to_delete = [r for r in local if r.relative_path not in source_paths]
    return plan
