"""Verified, atomic download of content files from a peer.

This module provides:
- download_timeout: size-scaled per-file request timeout
- FileTransferrer.download_one: bounded retries, atomic write, hash check
- FileTransferrer.sync_directory: scan, diff and transfer one directory
- FileTransferrer.run_full_sync: every configured directory in turn
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import logging
import math
import os
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from backend.exceptions import AuthError, IntegrityWarning, TransportError, ValidationError
from backend.filesystem.file_policy import is_file_type_allowed, resolve_within
from backend.services.file_differ import FileRecord, diff, fetch_remote, hash_file, scan_local
from backend.services.progress_service import scale_progress
from backend.services.transport import replication_path

if TYPE_CHECKING:
    from backend.config import Settings
    from backend.services.deadline import Deadline
    from backend.services.problem_files import ProblemFileRegistry
    from backend.services.progress_service import ProgressReporter
    from backend.services.transport import TransportClient

logger = logging.getLogger(__name__)

TIMEOUT_BASE_SECONDS = 30
TIMEOUT_BYTES_PER_SECOND = 102400
TIMEOUT_CAP_SECONDS = 180


def download_timeout(size: int) -> int:
    """Return the request timeout for a file of ``size`` bytes."""
    extra = math.ceil(max(size, 0) / TIMEOUT_BYTES_PER_SECOND)
    return min(TIMEOUT_BASE_SECONDS + extra, TIMEOUT_CAP_SECONDS)


class TransferStatus(StrEnum):
    """Outcome of one file download."""

    DOWNLOADED = "downloaded"
    FAILED = "failed"
    SKIPPED = "skipped"


class DirectoryState(StrEnum):
    """Phase of a directory sync. Transitions only move forward."""

    PENDING = "pending"
    SCANNING = "scanning"
    COMPARING = "comparing"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    TIMEOUT = "timeout"


@dataclass
class TransferResult:
    """Outcome of downloading one file."""

    relative_path: str
    status: TransferStatus
    attempts: int = 0
    size: int = 0
    error: str | None = None
    warnings: list[IntegrityWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == TransferStatus.DOWNLOADED


@dataclass
class DirectoryResult:
    """Outcome of syncing one directory."""

    directory: str
    state: DirectoryState = DirectoryState.PENDING
    downloaded: int = 0
    errors: int = 0
    skipped: int = 0
    deleted: int = 0
    unchanged: int = 0
    to_download: int = 0


@dataclass
class FullSyncResult:
    """Summed outcome of all directories."""

    directories: list[DirectoryResult] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return any(d.state == DirectoryState.TIMEOUT for d in self.directories)

    @property
    def downloaded(self) -> int:
        return sum(d.downloaded for d in self.directories)

    @property
    def errors(self) -> int:
        return sum(d.errors for d in self.directories)

    @property
    def skipped(self) -> int:
        return sum(d.skipped for d in self.directories)

    @property
    def deleted(self) -> int:
        return sum(d.deleted for d in self.directories)


@dataclass
class _Counters:
    """Running file counts across directories of one run."""

    total: int = 0
    completed: int = 0
    errors: int = 0


def decode_content(payload: dict[str, Any]) -> bytes:
    """Decode the ``content`` field of a file-content response.

    Raises ValueError when the payload is malformed.
    """
    content = payload.get("content")
    if not isinstance(content, str):
        raise ValueError("File content response without content")
    if payload.get("encoding") == "base64" or payload.get("is_binary"):
        try:
            return base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 content: {exc}") from exc
    return content.encode("utf-8")


def write_atomic(dest: Path, data: bytes) -> None:
    """Write ``data`` to ``dest`` via a temporary file in the same directory.

    ``dest`` is either left untouched or fully replaced.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=".sitesync-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class FileTransferrer:
    """Downloads changed files of the configured sync directories."""

    def __init__(
        self,
        transport: TransportClient,
        problem_files: ProblemFileRegistry,
        reporter: ProgressReporter,
        directories: dict[str, Path],
        *,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        max_scan_files: int = 10000,
        delete_removed: bool = False,
        allowed_extensions: Iterable[str] = (),
        blocked_extensions: Iterable[str] = (),
        listing_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.problem_files = problem_files
        self.reporter = reporter
        self.directories = dict(directories)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_scan_files = max_scan_files
        self.delete_removed = delete_removed
        self.allowed_extensions = list(allowed_extensions)
        self.blocked_extensions = list(blocked_extensions)
        self.listing_timeout = listing_timeout
        self._sleep = sleep
        self._counters = _Counters()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: TransportClient,
        problem_files: ProblemFileRegistry,
        reporter: ProgressReporter,
    ) -> FileTransferrer:
        """Build a transferrer configured from application settings."""
        return cls(
            transport,
            problem_files,
            reporter,
            settings.sync_directories,
            max_attempts=settings.download_attempts,
            retry_delay=settings.download_retry_delay,
            max_scan_files=settings.max_scan_files,
            delete_removed=settings.delete_removed_files,
            allowed_extensions=settings.allowed_extensions,
            blocked_extensions=settings.blocked_extensions,
            listing_timeout=settings.request_timeout,
        )

    def _root(self, directory_key: str) -> Path:
        root = self.directories.get(directory_key)
        if root is None:
            raise ValidationError(f"Unknown sync directory: {directory_key}")
        return root

    def _is_syncable(self, relative_path: str) -> bool:
        return is_file_type_allowed(
            relative_path, self.allowed_extensions, self.blocked_extensions
        )

    async def _fetch_source(self, directory_key: str) -> list[FileRecord]:
        records = await fetch_remote(self.transport, directory_key, timeout=self.listing_timeout)
        syncable = [r for r in records if self._is_syncable(r.relative_path)]
        if len(syncable) < len(records):
            logger.info(
                "Ignoring %d source files of disallowed type in %s",
                len(records) - len(syncable),
                directory_key,
            )
        return syncable

    async def download_one(
        self,
        directory_key: str,
        record: FileRecord,
        dest_root: Path,
        max_attempts: int | None = None,
    ) -> TransferResult:
        """Download one file into ``dest_root``.

        Transport failures and non-200 responses are retried up to
        ``max_attempts`` times. A failed download leaves no file behind at the
        destination path and marks the path as a problem file. A hash mismatch
        after writing is logged, not treated as a failure. Raises AuthError
        when the peer rejects the token.
        """
        attempts = max(1, max_attempts or self.max_attempts)
        problem_key = f"{directory_key}/{record.relative_path}"
        result = TransferResult(relative_path=record.relative_path, status=TransferStatus.FAILED)

        if await self.problem_files.should_skip(problem_key):
            logger.info("Skipping problem file %s", problem_key)
            result.status = TransferStatus.SKIPPED
            return result

        try:
            dest = resolve_within(dest_root, record.relative_path)
        except ValidationError as exc:
            result.error = str(exc)
            logger.warning("Rejected path from source listing: %r", record.relative_path)
            await self.problem_files.mark_as_problem(problem_key, result.error)
            return result

        timeout = download_timeout(record.size)
        params = {"directory": directory_key, "file": record.relative_path}
        data: bytes | None = None

        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            try:
                status_code, body = await self.transport.fetch(
                    replication_path("file-content"), params, timeout=timeout
                )
            except TransportError as exc:
                result.error = str(exc)
            else:
                if status_code in (401, 403):
                    raise AuthError(f"Peer rejected the sync token ({status_code})")
                if status_code == 200:
                    try:
                        payload = json.loads(body)
                        if not isinstance(payload, dict):
                            raise ValueError("File content response is not an object")
                        data = decode_content(payload)
                    except (ValueError, UnicodeDecodeError) as exc:
                        result.error = f"Invalid content response: {exc}"
                    else:
                        break
                else:
                    result.error = f"HTTP {status_code}"

            logger.warning(
                "Download attempt %d/%d failed for %s: %s",
                attempt,
                attempts,
                record.relative_path,
                result.error,
            )
            if attempt < attempts:
                await self._sleep(self.retry_delay)

        if data is None:
            logger.error("Failed to download %s after %d attempts", record.relative_path, attempts)
            await self.problem_files.mark_as_problem(problem_key, result.error or "unknown error")
            return result

        try:
            write_atomic(dest, data)
        except OSError as exc:
            result.error = f"Write failed: {exc}"
            logger.error("Failed to write %s: %s", dest, exc)
            await self.problem_files.mark_as_problem(problem_key, result.error)
            return result

        result.status = TransferStatus.DOWNLOADED
        result.size = len(data)
        result.error = None

        actual = hash_file(dest)
        if record.content_hash and actual != record.content_hash:
            warning = IntegrityWarning(
                f"Hash mismatch for {record.relative_path}: "
                f"expected {record.content_hash}, got {actual}"
            )
            result.warnings.append(warning)
            logger.warning("%s", warning)

        await self.problem_files.clear(problem_key)
        logger.debug("Downloaded %s (%d bytes)", record.relative_path, result.size)
        return result

    async def sync_directory(
        self,
        sync_id: str,
        directory_key: str,
        deadline: Deadline,
        progress_range: tuple[int, int] = (5, 95),
    ) -> DirectoryResult:
        """Bring one local directory up to date with the source.

        Raises ValidationError for an unknown directory key and
        RemoteListingError when the source listing cannot be fetched.
        """
        start, end = progress_range
        root = self._root(directory_key)
        result = DirectoryResult(directory=directory_key)
        counters = self._counters

        result.state = DirectoryState.SCANNING
        await self.reporter.update(
            sync_id,
            status="running",
            message=f"Scanning local files in {directory_key}",
            progress=start,
        )
        local = scan_local(root, max_files=self.max_scan_files, include=self._is_syncable)
        logger.info("Found %d local files in %s", len(local), directory_key)

        result.state = DirectoryState.COMPARING
        await self.reporter.update(
            sync_id, message=f"Comparing {directory_key} with source", progress=start
        )
        source = await self._fetch_source(directory_key)
        plan = diff(source, local)
        result.unchanged = plan.unchanged_count
        result.to_download = len(plan.to_download)
        counters.total += len(plan.to_download)
        logger.info(
            "%s: %d to download, %d unchanged, %d only local",
            directory_key,
            len(plan.to_download),
            plan.unchanged_count,
            len(plan.to_delete),
        )

        result.state = DirectoryState.TRANSFERRING
        await self.reporter.update(
            sync_id,
            message=f"Transferring {len(plan.to_download)} files in {directory_key}",
            files_total=counters.total,
            progress=start,
        )

        for index, record in enumerate(plan.to_download):
            if deadline.should_stop():
                logger.warning(
                    "Time limit reached in %s, %d files left",
                    directory_key,
                    len(plan.to_download) - index,
                )
                result.state = DirectoryState.TIMEOUT
                break

            transfer = await self.download_one(directory_key, record, root)
            if transfer.status == TransferStatus.DOWNLOADED:
                result.downloaded += 1
                counters.completed += 1
            elif transfer.status == TransferStatus.SKIPPED:
                result.skipped += 1
                counters.completed += 1
            else:
                result.errors += 1
                counters.errors += 1

            await self.reporter.update(
                sync_id,
                message=f"Processed {index + 1}/{len(plan.to_download)} files in {directory_key}",
                current_file=record.relative_path,
                files_completed=counters.completed,
                files_errors=counters.errors,
                progress=scale_progress(start, end, index + 1, len(plan.to_download)),
            )

        if result.state == DirectoryState.TRANSFERRING:
            result.deleted = self._delete_local_only(root, plan.to_delete)
            result.state = DirectoryState.COMPLETED

        final: dict[str, Any] = {"current_file": ""}
        if result.state == DirectoryState.COMPLETED:
            final["progress"] = end
        await self.reporter.update(
            sync_id,
            message=(
                f"{directory_key}: {result.downloaded} downloaded, {result.errors} errors, "
                f"{result.skipped} skipped, {result.deleted} deleted"
            ),
            **final,
        )
        logger.info(
            "Directory %s %s: %d downloaded, %d errors, %d skipped, %d deleted",
            directory_key,
            result.state,
            result.downloaded,
            result.errors,
            result.skipped,
            result.deleted,
        )
        return result

    def _delete_local_only(self, root: Path, records: list[FileRecord]) -> int:
        if not records:
            return 0
        if not self.delete_removed:
            logger.info("Keeping %d files not present on source", len(records))
            return 0
        deleted = 0
        for record in records:
            try:
                path = resolve_within(root, record.relative_path)
                path.unlink()
            except (ValidationError, OSError) as exc:
                logger.warning("Could not delete %s: %s", record.relative_path, exc)
                continue
            deleted += 1
            logger.info("Deleted %s (not present on source)", record.relative_path)
        return deleted

    async def run_full_sync(
        self,
        sync_id: str,
        deadline: Deadline,
        directory_keys: list[str] | None = None,
        progress_range: tuple[int, int] = (5, 95),
    ) -> FullSyncResult:
        """Sync every directory in turn, splitting the progress range between them."""
        keys = directory_keys if directory_keys is not None else list(self.directories)
        self._counters = _Counters()
        full = FullSyncResult()
        if not keys:
            return full

        start, end = progress_range
        span = (end - start) / len(keys)
        for index, key in enumerate(keys):
            sub_range = (int(start + span * index), int(start + span * (index + 1)))
            directory = await self.sync_directory(sync_id, key, deadline, sub_range)
            full.directories.append(directory)
            if directory.state == DirectoryState.TIMEOUT:
                break
        return full

    async def verify(self, directory_key: str) -> dict[str, int]:
        """Compare local and remote state of one directory without transferring."""
        root = self._root(directory_key)
        local = scan_local(root, max_files=self.max_scan_files, include=self._is_syncable)
        source = await self._fetch_source(directory_key)
        plan = diff(source, local)
        return {
            "local_files": len(local),
            "remote_files": len(source),
            "pending_downloads": len(plan.to_download),
            "local_only": len(plan.to_delete),
            "unchanged": plan.unchanged_count,
        }
