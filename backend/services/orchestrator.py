"""Sync orchestration: one background run per sync id, under one deadline."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from backend.exceptions import SyncAlreadyRunningError, SyncError, ValidationError
from backend.services.deadline import Deadline
from backend.services.file_transfer import FileTransferrer
from backend.services.options_sync import OptionsSync
from backend.services.progress_service import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_RUNNING,
    STATUS_TIMEOUT,
    ProgressRecord,
    scale_progress,
)
from backend.services.sync_log_service import log_sync_operation
from backend.services.table_replicator import TableProgress, TableReplicator
from backend.services.transport import TransportClient

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from backend.config import Settings
    from backend.services.problem_files import ProblemFileRegistry
    from backend.services.progress_service import ProgressReporter

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], TransportClient]

FILES_RANGE_FULL = (5, 50)
TABLES_RANGE_FULL = (50, 95)
SINGLE_RANGE = (5, 95)


class SyncMode(StrEnum):
    """What a sync run replicates."""

    FILES = "files"
    DB = "db"
    FULL = "full"


def parse_mode(value: str) -> SyncMode:
    """Parse a sync mode. Raises ValidationError for unknown values."""
    try:
        return SyncMode(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid sync mode: {value}") from exc


def validate_source_url(url: str) -> str:
    """Normalize a source URL. Raises ValidationError unless it is http(s) with a host."""
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Source URL must be an http(s) URL")
    return url.strip().rstrip("/")


class SyncOrchestrator:
    """Sequences the file and table phases of a sync run."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        reporter: ProgressReporter,
        problem_files: ProblemFileRegistry,
        *,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.reporter = reporter
        self.problem_files = problem_files
        self.transport_factory = transport_factory or self._default_transport
        self._clock = clock
        self._start_lock = asyncio.Lock()

    def _default_transport(self, source_url: str) -> TransportClient:
        return TransportClient(
            source_url,
            self.settings.sync_secret,
            verify=self.settings.sync_verify_tls,
            retry_delay=self.settings.retry_delay,
            default_timeout=self.settings.request_timeout,
        )

    async def start(self, source_url: str, mode: str, include_options: bool = False) -> str:
        """Validate the request and create its progress record.

        Raises ValidationError for a bad URL or mode, SyncAlreadyRunningError
        while another sync is active. Returns the new sync id.
        """
        url = validate_source_url(source_url)
        sync_mode = parse_mode(mode)
        async with self._start_lock:
            await self.reporter.cleanup_expired()
            active = await self.reporter.current()
            if active is not None:
                raise SyncAlreadyRunningError(active.sync_id)
            sync_id = uuid.uuid4().hex
            await self.reporter.create(sync_id, sync_mode.value, url)
        logger.info(
            "Sync %s scheduled: mode=%s source=%s include_options=%s",
            sync_id,
            sync_mode,
            url,
            include_options,
        )
        return sync_id

    async def run(
        self,
        sync_id: str,
        mode: str,
        source_url: str,
        include_options: bool = False,
    ) -> ProgressRecord | None:
        """Execute a scheduled sync and leave its record in a terminal state."""
        sync_mode = parse_mode(mode)
        deadline = Deadline.after(
            self.settings.max_execution_time,
            safety_margin=self.settings.safety_margin,
            clock=self._clock,
        )
        started = self._clock()
        summary: dict[str, Any] = {}
        timed_out = False

        await self.reporter.update(
            sync_id, status=STATUS_RUNNING, message="Sync started", progress=5
        )
        try:
            await self.problem_files.cleanup(self.settings.problem_file_retention_days)
            async with self.transport_factory(source_url) as transport:
                if sync_mode in (SyncMode.FILES, SyncMode.FULL):
                    span = FILES_RANGE_FULL if sync_mode == SyncMode.FULL else SINGLE_RANGE
                    timed_out = await self._run_files(sync_id, transport, deadline, span, summary)

                if sync_mode in (SyncMode.DB, SyncMode.FULL) and not timed_out:
                    span = TABLES_RANGE_FULL if sync_mode == SyncMode.FULL else SINGLE_RANGE
                    timed_out = await self._run_tables(
                        sync_id, transport, deadline, span, source_url, include_options, summary
                    )
        except SyncError as exc:
            return await self._fail(sync_id, str(exc), summary)
        except Exception as exc:
            logger.exception("Sync %s failed unexpectedly", sync_id)
            return await self._fail(sync_id, f"Unexpected error: {exc}", summary)

        elapsed = self._clock() - started
        summary["elapsed"] = round(elapsed, 1)
        if timed_out:
            message = f"Time limit reached after {elapsed:.0f}s; completed work was kept"
            record = await self.reporter.update(
                sync_id, status=STATUS_TIMEOUT, message=message, current_file="", current_table=""
            )
            await self._log("info", f"Sync {sync_id} stopped at time limit", summary)
            logger.warning("Sync %s: %s", sync_id, message)
            return record

        message = f"Sync completed in {elapsed:.0f}s"
        record = await self.reporter.update(
            sync_id,
            status=STATUS_COMPLETED,
            message=message,
            progress=100,
            current_file="",
            current_table="",
        )
        await self._log("info", f"Sync {sync_id} completed", summary)
        logger.info("Sync %s completed in %.1fs", sync_id, elapsed)
        return record

    async def _run_files(
        self,
        sync_id: str,
        transport: TransportClient,
        deadline: Deadline,
        span: tuple[int, int],
        summary: dict[str, Any],
    ) -> bool:
        await self.reporter.update(sync_id, message="Syncing files", progress=span[0])
        transferrer = FileTransferrer.from_settings(
            self.settings, transport, self.problem_files, self.reporter
        )
        result = await transferrer.run_full_sync(sync_id, deadline, progress_range=span)
        summary["files"] = {
            "downloaded": result.downloaded,
            "errors": result.errors,
            "skipped": result.skipped,
            "deleted": result.deleted,
        }
        await self._log(
            "file",
            f"File sync: {result.downloaded} downloaded, {result.errors} errors",
            summary["files"],
        )
        return result.timed_out

    async def _run_tables(
        self,
        sync_id: str,
        transport: TransportClient,
        deadline: Deadline,
        span: tuple[int, int],
        source_url: str,
        include_options: bool,
        summary: dict[str, Any],
    ) -> bool:
        start, end = span
        await self.reporter.update(sync_id, message="Syncing database tables", progress=start)

        async def on_progress(progress: TableProgress) -> None:
            await self.reporter.update(
                sync_id,
                message=(
                    f"Syncing table {progress.current_table}"
                    if progress.current_table
                    else "Database tables processed"
                ),
                tables_total=progress.tables_total,
                tables_completed=progress.tables_completed,
                tables_errors=progress.tables_errors,
                current_table=progress.current_table,
                progress=scale_progress(
                    start, end, progress.tables_completed, progress.tables_total
                ),
            )

        replicator = TableReplicator.from_settings(
            self.settings,
            transport,
            self.engine,
            deadline=deadline,
            include_options=include_options,
            on_progress=on_progress,
        )

        options: OptionsSync | None = None
        if include_options:
            options = self._options_sync(source_url)
            await options.backup_protected()

        run = await replicator.run_sync()
        if run.tables_total == 0:
            raise SyncError("Could not get table list")

        summary["tables"] = {
            "total": run.tables_total,
            "synced": run.tables_synced,
            "errors": run.tables_failed,
            "rows": run.rows_synced,
            "fallback_used": run.fallback_used,
        }
        await self._log(
            "db",
            f"Database sync: {run.tables_synced}/{run.tables_total} tables, {run.rows_synced} rows",
            summary["tables"],
        )

        if options is not None:
            await self.reporter.update(sync_id, message="Restoring site options")
            await options.restore_protected()
            rewritten = await options.rewrite_urls()
            remaining = await options.remaining_source_urls()
            summary["options"] = {"rewritten_rows": rewritten, "remaining_source_urls": remaining}
            await self._log("db", "Site options restored", summary["options"])

        return run.timed_out

    def _options_sync(self, source_url: str) -> OptionsSync:
        settings = self.settings
        return OptionsSync(
            self.engine,
            source_url,
            settings.site_url,
            options_table=settings.prefixed(settings.options_table),
            name_column=settings.options_name_column,
            value_column=settings.options_value_column,
            protected_options=settings.protected_options,
            url_options=settings.url_options,
            rewrite_columns={
                settings.prefixed(table): columns
                for table, columns in settings.url_rewrite_columns.items()
            },
        )

    async def _fail(
        self, sync_id: str, message: str, summary: dict[str, Any]
    ) -> ProgressRecord | None:
        logger.error("Sync %s failed: %s", sync_id, message)
        record = await self.reporter.update(
            sync_id, status=STATUS_ERROR, message=message, error=message
        )
        await self._log("error", f"Sync {sync_id} failed: {message}", summary)
        return record

    async def _log(self, kind: str, message: str, data: dict[str, Any]) -> None:
        async with self.session_factory() as session:
            await log_sync_operation(session, kind, message, data)
