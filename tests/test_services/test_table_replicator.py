"""Tests for chunked table replication."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import pytest

from backend.exceptions import AuthError
from backend.services.deadline import Deadline
from backend.services.table_replicator import TableProgress, TableReplicator
from backend.services.table_store import count_rows, fetch_rows, has_table, reflect_table
from tests.conftest import (
    FakeSource,
    asgi_transport_factory,
    create_test_app,
    make_settings,
    seed_posts,
)

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

A_DDL = "CREATE TABLE a (id INTEGER PRIMARY KEY, name TEXT)"
B_DDL = "CREATE TABLE b (id INTEGER PRIMARY KEY, note TEXT)"


def _rows(n: int) -> list[dict[str, Any]]:
    return [{"id": i, "name": f"row-{i}"} for i in range(1, n + 1)]


def _two_table_source() -> FakeSource:
    return FakeSource(
        tables={"a": (A_DDL, _rows(10)), "b": (B_DDL, [])},
        listing=[{"name": "a", "count": 10}, {"name": "b", "count": 0}],
    )


async def _count(engine: AsyncEngine, name: str) -> int:
    return await count_rows(engine, await reflect_table(engine, name))


class TestRunSync:
    async def test_copies_tables_in_listing_order(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        async with source.client() as transport:
            replicator = TableReplicator(transport, db_engine, chunk_size=5)
            run = await replicator.run_sync()

        assert source.endpoints() == [
            "tables",
            "table-structure",
            "table-rows",
            "table-rows",
            "table-rows",
            "table-structure",
            "table-rows",
        ]
        offsets = [p["offset"] for e, p in source.requests if e == "table-rows"]
        assert offsets == ["0", "5", "10", "0"]
        assert run.tables_total == 2
        assert run.tables_synced == 2
        assert run.rows_synced == 10
        assert run.timed_out is False
        assert await _count(db_engine, "a") == 10
        assert await _count(db_engine, "b") == 0

    async def test_second_run_is_idempotent(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        async with source.client() as transport:
            await TableReplicator(transport, db_engine, chunk_size=5).run_sync()
            await TableReplicator(transport, db_engine, chunk_size=5).run_sync()

        table = await reflect_table(db_engine, "a")
        assert await count_rows(db_engine, table) == 10
        rows = await fetch_rows(db_engine, table, 0, 100)
        assert rows == _rows(10)

    async def test_source_changes_overwrite_local_rows(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        async with source.client() as transport:
            await TableReplicator(transport, db_engine, chunk_size=5).run_sync()
            source.tables["a"][1][0]["name"] = "renamed"
            await TableReplicator(transport, db_engine, chunk_size=5).run_sync()

        rows = await fetch_rows(db_engine, await reflect_table(db_engine, "a"), 0, 1)
        assert rows == [{"id": 1, "name": "renamed"}]

    async def test_progress_callback_reports_each_table(self, db_engine: AsyncEngine) -> None:
        updates: list[TableProgress] = []

        async def on_progress(progress: TableProgress) -> None:
            updates.append(progress)

        source = _two_table_source()
        async with source.client() as transport:
            await TableReplicator(
                transport, db_engine, chunk_size=5, on_progress=on_progress
            ).run_sync()

        assert updates[0].current_table == "a"
        assert updates[-1].tables_completed == 2
        assert updates[-1].current_table == ""
        assert updates[-1].rows_synced == 10
        completed = [u.tables_completed for u in updates]
        assert completed == sorted(completed)

    async def test_failed_table_does_not_stop_the_run(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()

        def rows(params: dict[str, str]) -> httpx.Response:
            if params["table"] == "a" and params["offset"] == "5":
                return httpx.Response(500, json={"detail": "boom"})
            _, data = source.tables[params["table"]]
            offset, limit = int(params["offset"]), int(params["limit"])
            return httpx.Response(200, json=data[offset : offset + limit])

        source.overrides["table-rows"] = rows
        async with source.client() as transport:
            run = await TableReplicator(transport, db_engine, chunk_size=5).run_sync()

        assert run.tables_failed == 1
        assert run.tables_synced == 1
        assert run.results[0].rows == 5
        assert run.results[0].error is not None
        assert await _count(db_engine, "a") == 5

    async def test_missing_structure_skips_table(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()

        def structure(params: dict[str, str]) -> httpx.Response:
            if params["table"] == "a":
                return httpx.Response(500)
            return httpx.Response(200, json={"table": "b", "create_statement": B_DDL})

        source.overrides["table-structure"] = structure
        async with source.client() as transport:
            run = await TableReplicator(transport, db_engine, chunk_size=5).run_sync()

        assert run.results[0].error == "Table could not be created"
        assert run.results[1].error is None
        assert not await has_table(db_engine, "a")
        assert ("table-rows", {"table": "a", "offset": "0", "limit": "5"}) not in source.requests


class TestBudget:
    async def test_deadline_stops_after_current_chunk(self, db_engine: AsyncEngine) -> None:
        now = [0.0]
        deadline = Deadline(expires_at=100.0, safety_margin=10.0, clock=lambda: now[0])
        source = _two_table_source()

        def rows(params: dict[str, str]) -> httpx.Response:
            now[0] = 95.0
            _, data = source.tables[params["table"]]
            offset, limit = int(params["offset"]), int(params["limit"])
            return httpx.Response(200, json=data[offset : offset + limit])

        source.overrides["table-rows"] = rows
        async with source.client() as transport:
            run = await TableReplicator(
                transport, db_engine, chunk_size=5, deadline=deadline, clock=lambda: now[0]
            ).run_sync()

        assert run.timed_out is True
        assert [r.name for r in run.results] == ["a"]
        assert run.results[0].rows == 5
        assert await _count(db_engine, "a") == 5
        assert not await has_table(db_engine, "b")

    async def test_expired_deadline_copies_nothing(self, db_engine: AsyncEngine) -> None:
        deadline = Deadline(expires_at=0.0, safety_margin=10.0, clock=lambda: 0.0)
        source = _two_table_source()
        async with source.client() as transport:
            run = await TableReplicator(transport, db_engine, deadline=deadline).run_sync()

        assert run.timed_out is True
        assert run.results == []
        assert source.endpoints() == ["tables"]


class TestListTables:
    async def test_unavailable_listing_uses_fallback(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        source.overrides["tables"] = lambda params: httpx.Response(500)
        async with source.client() as transport:
            replicator = TableReplicator(transport, db_engine, fallback_tables=["b"])
            run = await replicator.run_sync()

        assert run.fallback_used is True
        assert [r.name for r in run.results] == ["b"]

    async def test_malformed_listing_uses_fallback(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        source.overrides["tables"] = lambda params: httpx.Response(200, json={"tables": []})
        async with source.client() as transport:
            tables = await TableReplicator(
                transport, db_engine, fallback_tables=["a", "b"]
            ).list_tables()
        assert [t.name for t in tables] == ["a", "b"]

    async def test_disabled_fallback_yields_no_tables(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        source.overrides["tables"] = lambda params: httpx.Response(502)
        async with source.client() as transport:
            replicator = TableReplicator(
                transport, db_engine, fallback_tables=["a"], fallback_enabled=False
            )
            run = await replicator.run_sync()
        assert run.tables_total == 0
        assert run.fallback_used is False

    async def test_rejected_token_is_not_masked(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        source.overrides["tables"] = lambda params: httpx.Response(401)
        async with source.client() as transport:
            with pytest.raises(AuthError):
                await TableReplicator(transport, db_engine, fallback_tables=["a"]).run_sync()

    async def test_options_table_appended_when_requested(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        async with source.client() as transport:
            tables = await TableReplicator(
                transport, db_engine, include_options=True, options_table="wp_options"
            ).list_tables()
        assert [t.name for t in tables] == ["a", "b", "wp_options"]

    async def test_options_table_dropped_unless_requested(self, db_engine: AsyncEngine) -> None:
        source = FakeSource(
            tables={"a": (A_DDL, _rows(1))},
            listing=[{"name": "a", "count": 1}, {"name": "wp_options", "count": 40}],
        )
        async with source.client() as transport:
            tables = await TableReplicator(
                transport, db_engine, include_options=False, options_table="wp_options"
            ).list_tables()
        assert [t.name for t in tables] == ["a"]


class TestVerify:
    async def test_counts_exclude_bookkeeping_tables(self, db_engine: AsyncEngine) -> None:
        source = _two_table_source()
        async with source.client() as transport:
            replicator = TableReplicator(transport, db_engine, chunk_size=5)
            await replicator.run_sync()
            counts = await replicator.verify()
        assert counts == {"a": 10, "b": 0}


class TestAgainstPeer:
    async def test_source_page_cap_below_chunk_size(
        self, tmp_path: Path, db_engine: AsyncEngine
    ) -> None:
        settings = make_settings(tmp_path, "source", max_rows_per_request=3)
        async with create_test_app(settings) as source_app:
            await seed_posts(source_app.state.engine, 10)
            async with asgi_transport_factory(source_app)("http://source.test") as transport:
                run = await TableReplicator(transport, db_engine, chunk_size=5).run_sync()

        assert run.rows_synced == 10
        assert run.tables_failed == 0
        assert await _count(db_engine, "posts") == 10
