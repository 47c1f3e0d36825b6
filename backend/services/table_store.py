"""Dialect-aware access to tables whose schema is only known at runtime."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import MetaData, Table, func, inspect, select, text
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.schema import CreateTable

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine
    from sqlalchemy.sql.dml import Insert

logger = logging.getLogger(__name__)


async def list_table_names(engine: AsyncEngine) -> list[str]:
    """Return the names of all tables in the database."""
    async with engine.connect() as conn:
        names: list[str] = await conn.run_sync(lambda c: inspect(c).get_table_names())
    return names


async def has_table(engine: AsyncEngine, name: str) -> bool:
    """Return True when ``name`` exists in the database."""
    async with engine.connect() as conn:
        exists: bool = await conn.run_sync(lambda c: inspect(c).has_table(name))
    return exists


async def reflect_table(engine: AsyncEngine, name: str) -> Table:
    """Load a table definition from the database.

    Raises sqlalchemy.exc.NoSuchTableError when the table does not exist.
    """
    async with engine.connect() as conn:
        table: Table = await conn.run_sync(
            lambda c: Table(name, MetaData(), autoload_with=c)
        )
    return table


async def count_rows(engine: AsyncEngine, table: Table) -> int:
    """Return the number of rows in ``table``."""
    async with engine.connect() as conn:
        result = await conn.execute(select(func.count()).select_from(table))
        return int(result.scalar_one())


async def get_create_statement(engine: AsyncEngine, name: str) -> str | None:
    """Return the DDL that creates ``name``, or None when it is unavailable."""
    dialect = engine.dialect.name
    async with engine.connect() as conn:
        if dialect == "sqlite":
            result = await conn.execute(
                text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
                {"name": name},
            )
            statement = result.scalar_one_or_none()
            return str(statement) if statement else None
        if dialect in ("mysql", "mariadb"):
            quoted = engine.dialect.identifier_preparer.quote(name)
            result = await conn.execute(text(f"SHOW CREATE TABLE {quoted}"))
            row = result.first()
            return str(row[1]) if row is not None else None
        table: Table = await conn.run_sync(lambda c: Table(name, MetaData(), autoload_with=c))
        return str(CreateTable(table).compile(dialect=engine.dialect)).strip()


async def fetch_rows(
    engine: AsyncEngine,
    table: Table,
    offset: int,
    limit: int,
) -> list[dict[str, Any]]:
    """Read one window of rows, ordered by primary key when the table has one."""
    stmt = select(table)
    pk_columns = list(table.primary_key.columns)
    if pk_columns:
        stmt = stmt.order_by(*pk_columns)
    stmt = stmt.offset(offset).limit(limit)
    async with engine.connect() as conn:
        result = await conn.execute(stmt)
        return [dict(row) for row in result.mappings().all()]


def build_replace_statement(table: Table, dialect_name: str) -> Insert:
    """Build an insert-or-replace statement keyed on the table's primary key.

    Tables without a primary key (or unique constraint, on SQLite) get a
    plain insert, so re-running a copy of such a table duplicates rows.
    """
    pk_names = [column.name for column in table.primary_key.columns]
    non_pk = [column.name for column in table.columns if column.name not in pk_names]

    if dialect_name == "sqlite":
        return table.insert().prefix_with("OR REPLACE")

    if dialect_name == "postgresql" and pk_names:
        pg_stmt = pg_insert(table)
        if not non_pk:
            return pg_stmt.on_conflict_do_nothing(index_elements=pk_names)
        return pg_stmt.on_conflict_do_update(
            index_elements=pk_names,
            set_={name: pg_stmt.excluded[name] for name in non_pk},
        )

    if dialect_name in ("mysql", "mariadb"):
        my_stmt = mysql_insert(table)
        if not non_pk:
            return my_stmt.prefix_with("IGNORE")
        return my_stmt.on_duplicate_key_update(
            {name: my_stmt.inserted[name] for name in non_pk}
        )

    return table.insert()


def restrict_to_columns(
    table: Table, rows: Iterable[Mapping[str, Any]]
) -> list[dict[str, Any]]:
    """Drop keys that are not columns of ``table``."""
    known = set(table.columns.keys())
    restricted: list[dict[str, Any]] = []
    dropped: set[str] = set()
    for row in rows:
        restricted.append({k: v for k, v in row.items() if k in known})
        dropped.update(k for k in row if k not in known)
    if dropped:
        logger.warning(
            "Ignoring columns unknown to local table %s: %s", table.name, sorted(dropped)
        )
    return restricted


async def replace_rows(
    engine: AsyncEngine,
    table: Table,
    rows: Iterable[Mapping[str, Any]],
) -> int:
    """Insert-or-replace ``rows`` into ``table`` in one transaction.

    Returns the number of rows written.
    """
    values = [row for row in restrict_to_columns(table, rows) if row]
    if not values:
        return 0
    stmt = build_replace_statement(table, engine.dialect.name)
    async with engine.begin() as conn:
        await conn.execute(stmt, values)
    return len(values)
