"""Chunked table replication from a peer instance.

This module provides:
- TableReplicator.list_tables: remote table discovery with a logged fallback
- TableReplicator.ensure_table_exists: DDL replay for missing tables
- TableReplicator.sync_table: paginated insert-or-replace copy of one table
- TableReplicator.run_sync: all tables, smallest first, under a time budget
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import (
    AuthError,
    BudgetExceeded,
    RemoteError,
    SyncError,
    TransportError,
)
from backend.models.sync import INTERNAL_TABLES
from backend.services.deadline import Deadline
from backend.services.row_codec import decode_row
from backend.services.table_store import (
    count_rows,
    has_table,
    list_table_names,
    reflect_table,
    replace_rows,
)
from backend.services.transport import replication_path

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from backend.config import Settings
    from backend.services.transport import TransportClient

logger = logging.getLogger(__name__)


@dataclass
class TableDescriptor:
    """A table offered by the source, with its row count at listing time."""

    name: str
    row_count: int


@dataclass
class TableSyncResult:
    """Outcome of copying one table."""

    name: str
    rows: int = 0
    chunks: int = 0
    elapsed: float = 0.0
    error: str | None = None


@dataclass
class TableRunResult:
    """Outcome of a whole table replication run."""

    tables_total: int = 0
    results: list[TableSyncResult] = field(default_factory=list)
    timed_out: bool = False
    fallback_used: bool = False
    elapsed: float = 0.0

    @property
    def tables_synced(self) -> int:
        return sum(1 for r in self.results if r.error is None)

    @property
    def tables_failed(self) -> int:
        return sum(1 for r in self.results if r.error is not None)

    @property
    def rows_synced(self) -> int:
        return sum(r.rows for r in self.results)


@dataclass
class TableProgress:
    """Snapshot handed to the progress callback."""

    tables_completed: int
    tables_total: int
    tables_errors: int
    current_table: str
    rows_synced: int


TableProgressCallback = Callable[[TableProgress], Awaitable[None]]


class TableReplicator:
    """Copies the source's tables into the local database."""

    def __init__(
        self,
        transport: TransportClient,
        engine: AsyncEngine,
        *,
        deadline: Deadline | None = None,
        chunk_size: int = 50,
        include_options: bool = False,
        options_table: str = "options",
        fallback_tables: Sequence[str] = (),
        fallback_enabled: bool = True,
        request_timeout: float = 60.0,
        rows_timeout: float = 90.0,
        retry_attempts: int = 3,
        on_progress: TableProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.engine = engine
        self.deadline = deadline or Deadline.after(1800, clock=clock)
        self.chunk_size = chunk_size
        self.include_options = include_options
        self.options_table = options_table
        self.fallback_tables = list(fallback_tables)
        self.fallback_enabled = fallback_enabled
        self.request_timeout = request_timeout
        self.rows_timeout = rows_timeout
        self.retry_attempts = retry_attempts
        self.on_progress = on_progress
        self.fallback_used = False
        self._active_run: TableRunResult | None = None
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: TransportClient,
        engine: AsyncEngine,
        *,
        deadline: Deadline,
        include_options: bool = False,
        on_progress: TableProgressCallback | None = None,
    ) -> TableReplicator:
        """Build a replicator configured from application settings."""
        return cls(
            transport,
            engine,
            deadline=deadline,
            chunk_size=settings.chunk_size,
            include_options=include_options,
            options_table=settings.prefixed(settings.options_table),
            fallback_tables=[settings.prefixed(t) for t in settings.fallback_tables],
            fallback_enabled=settings.table_fallback_enabled,
            request_timeout=settings.request_timeout,
            rows_timeout=settings.rows_timeout,
            retry_attempts=settings.retry_attempts,
            on_progress=on_progress,
        )

    async def list_tables(self) -> list[TableDescriptor]:
        """Return the tables to copy, in the order the source listed them.

        The source sorts its listing by ascending row count. Transport
        failures, error statuses and malformed listings fall back to the
        configured core table list; an AuthError is raised. The options table
        is dropped unless options are included.
        """
        try:
            data = await self.transport.get_json(
                replication_path("tables"), timeout=self.request_timeout
            )
            tables = _parse_table_listing(data)
        except AuthError:
            raise
        except (TransportError, RemoteError, ValueError) as exc:
            logger.warning("Could not get table list from source: %s", exc)
            tables = self._fallback()
        else:
            self.fallback_used = False

        if not self.include_options:
            return [t for t in tables if t.name != self.options_table]
        if all(t.name != self.options_table for t in tables):
            tables.append(TableDescriptor(name=self.options_table, row_count=0))
        return tables

    def _fallback(self) -> list[TableDescriptor]:
        if not self.fallback_enabled:
            logger.error("Table list unavailable and the core table fallback is disabled")
            self.fallback_used = False
            return []
        logger.warning(
            "Degraded: replicating the %d fallback core tables instead of the source listing",
            len(self.fallback_tables),
        )
        self.fallback_used = True
        return [TableDescriptor(name=name, row_count=0) for name in self.fallback_tables]

    async def ensure_table_exists(self, name: str) -> bool:
        """Create ``name`` locally from the source's DDL when it is missing.

        Returns False, without raising, when the structure cannot be fetched or
        the statement fails; the caller skips the table.
        """
        try:
            if await has_table(self.engine, name):
                return True
        except SQLAlchemyError as exc:
            logger.error("Could not inspect local table %s: %s", name, exc)
            return False

        logger.info("Table %s does not exist locally, creating from source", name)
        try:
            data = await self.transport.get_json(
                replication_path("table-structure"),
                {"table": name},
                timeout=self.request_timeout,
            )
        except SyncError as exc:
            logger.error("Error getting structure of %s: %s", name, exc)
            return False

        statement = data.get("create_statement") if isinstance(data, dict) else None
        if not isinstance(statement, str) or not statement.strip():
            logger.error("Invalid structure response for %s", name)
            return False

        try:
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            logger.error("Failed to create table %s: %s", name, exc)
            return False

        logger.info("Created table %s", name)
        return True

    async def sync_table(self, name: str, chunk_size: int | None = None) -> TableSyncResult:
        """Copy all rows of ``name``, requesting ``chunk_size`` rows at a time.

        The offset advances by the rows actually received, so a source that
        caps its page size still yields every row.

        An empty chunk, an error status or an unusable body ends the table.
        Raises BudgetExceeded, carrying the partial result, when the deadline
        is reached after a chunk.
        """
        limit = chunk_size or self.chunk_size
        result = TableSyncResult(name=name)
        started = self._clock()
        table = await reflect_table(self.engine, name)

        offset = 0
        while True:
            try:
                status_code, body = await self.transport.fetch_with_retry(
                    replication_path("table-rows"),
                    {"table": name, "offset": offset, "limit": limit},
                    timeout=self.rows_timeout,
                    max_attempts=self.retry_attempts,
                )
            except TransportError as exc:
                result.error = str(exc)
                logger.error("Giving up on table %s at offset %d: %s", name, offset, exc)
                break

            if status_code != 200:
                result.error = f"HTTP {status_code} at offset {offset}"
                logger.error("Source returned HTTP %d for %s at offset %d", status_code, name, offset)
                break

            try:
                rows = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                result.error = f"Invalid JSON at offset {offset}"
                logger.error("Invalid JSON for %s at offset %d: %s", name, offset, exc)
                break

            if isinstance(rows, dict):
                result.error = str(rows.get("detail") or rows.get("error") or "unexpected object")
                logger.error("Source error for %s: %s", name, result.error)
                break
            if not isinstance(rows, list) or not rows:
                logger.debug("No more rows for %s after offset %d", name, offset)
                break

            try:
                await replace_rows(self.engine, table, [decode_row(row) for row in rows])
            except (SQLAlchemyError, ValueError, TypeError, AttributeError) as exc:
                result.error = f"Write failed at offset {offset}: {exc}"
                logger.error("Failed writing rows of %s at offset %d: %s", name, offset, exc)
                break

            result.rows += len(rows)
            result.chunks += 1
            offset += len(rows)
            logger.debug("Imported %d rows of %s so far", result.rows, name)
            if self._active_run is not None:
                await self._report(self._active_run, name, pending_rows=result.rows)

            if self.deadline.should_stop():
                result.elapsed = self._clock() - started
                logger.warning("Approaching time limit while syncing %s, stopping", name)
                raise BudgetExceeded(f"Time limit reached while syncing {name}", partial=result)

        result.elapsed = self._clock() - started
        return result

    async def run_sync(self) -> TableRunResult:
        """Copy every listed table, continuing past single-table failures."""
        started = self._clock()
        tables = await self.list_tables()
        run = TableRunResult(tables_total=len(tables), fallback_used=self.fallback_used)
        self._active_run = run
        try:
            await self._copy_tables(run, tables, started)
        finally:
            self._active_run = None

        run.elapsed = self._clock() - started
        await self._report(run, "")
        logger.info(
            "Table sync finished: %d/%d tables, %d rows, %d errors in %.1fs%s",
            run.tables_synced,
            run.tables_total,
            run.rows_synced,
            run.tables_failed,
            run.elapsed,
            " (timed out)" if run.timed_out else "",
        )
        return run

    async def _copy_tables(
        self, run: TableRunResult, tables: list[TableDescriptor], started: float
    ) -> None:
        for index, descriptor in enumerate(tables):
            if self.deadline.should_stop():
                logger.warning("Time limit reached, skipping %d remaining tables", len(tables) - index)
                run.timed_out = True
                break

            elapsed = self._clock() - started
            logger.info(
                "[%d/%d] Syncing table %s (elapsed %.0fs)",
                index + 1,
                len(tables),
                descriptor.name,
                elapsed,
            )
            await self._report(run, descriptor.name)

            if not await self.ensure_table_exists(descriptor.name):
                logger.error("Skipping table %s: it could not be created", descriptor.name)
                run.results.append(
                    TableSyncResult(name=descriptor.name, error="Table could not be created")
                )
                continue

            try:
                result = await self.sync_table(descriptor.name)
            except BudgetExceeded as exc:
                partial = exc.partial or TableSyncResult(name=descriptor.name)
                run.results.append(partial)
                run.timed_out = True
                break
            except (SQLAlchemyError, SyncError) as exc:
                logger.error("Table %s failed: %s", descriptor.name, exc)
                run.results.append(TableSyncResult(name=descriptor.name, error=str(exc)))
                continue

            run.results.append(result)
            logger.info(
                "Completed %s: %d records in %.1fs", result.name, result.rows, result.elapsed
            )

    async def verify(self) -> dict[str, int]:
        """Return local row counts of every replicable table."""
        counts: dict[str, int] = {}
        for name in await list_table_names(self.engine):
            if name in INTERNAL_TABLES:
                continue
            table = await reflect_table(self.engine, name)
            counts[name] = await count_rows(self.engine, table)
        return counts

    async def _report(self, run: TableRunResult, current_table: str, pending_rows: int = 0) -> None:
        if self.on_progress is None:
            return
        await self.on_progress(
            TableProgress(
                tables_completed=len(run.results),
                tables_total=run.tables_total,
                tables_errors=run.tables_failed,
                current_table=current_table,
                rows_synced=run.rows_synced + pending_rows,
            )
        )


def _parse_table_listing(data: Any) -> list[TableDescriptor]:
    """Validate the source's table listing. Raises ValueError when malformed."""
    if not isinstance(data, list):
        raise ValueError("Table listing is not a list")
    tables: list[TableDescriptor] = []
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise ValueError(f"Malformed table listing entry: {item!r}")
        count = item.get("count", 0)
        tables.append(TableDescriptor(name=item["name"], row_count=int(count or 0)))
    return tables
