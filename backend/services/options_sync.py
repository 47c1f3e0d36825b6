"""Site options handling around a table sync.

Replicating the options table overwrites settings that must stay local
(site URL, secret keys, active theme). ``OptionsSync`` backs those up before
the copy, restores them afterwards and rewrites the source URL to the
destination URL in the configured columns.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from backend.services.table_store import reflect_table

if TYPE_CHECKING:
    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def replace_urls(value: Any, source: str, destination: str) -> Any:
    """Replace ``source`` with ``destination`` throughout ``value``.

    Recurses into dicts, lists and strings holding JSON objects or arrays;
    JSON strings are re-encoded only when something inside them changed.
    """
    if isinstance(value, str):
        if source not in value and source.replace("/", "\\/") not in value:
            return value
        stripped = value.strip()
        if stripped[:1] in ("{", "["):
            try:
                decoded = json.loads(stripped)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, (dict, list)):
                replaced = replace_urls(decoded, source, destination)
                if replaced != decoded:
                    return json.dumps(replaced, ensure_ascii=False)
                return value
        return value.replace(source, destination)
    if isinstance(value, dict):
        return {k: replace_urls(v, source, destination) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_urls(v, source, destination) for v in value]
    return value


class OptionsSync:
    """Protects local options and rewrites URLs after a table sync."""

    def __init__(
        self,
        engine: AsyncEngine,
        source_url: str,
        destination_url: str,
        *,
        options_table: str = "options",
        name_column: str = "option_name",
        value_column: str = "option_value",
        protected_options: Iterable[str] = (),
        url_options: Iterable[str] = ("siteurl", "home"),
        rewrite_columns: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.engine = engine
        self.source_url = source_url.rstrip("/")
        self.destination_url = destination_url.rstrip("/")
        self.options_table = options_table
        self.name_column = name_column
        self.value_column = value_column
        self.protected_options = list(protected_options)
        self.url_options = list(url_options)
        self.rewrite_columns = {
            table: list(columns) for table, columns in (rewrite_columns or {}).items()
        }
        self._backup: dict[str, Any] = {}

    async def _options(self) -> Table | None:
        try:
            return await reflect_table(self.engine, self.options_table)
        except NoSuchTableError:
            return None

    async def backup_protected(self) -> dict[str, Any]:
        """Read the protected options. A missing options table yields an empty backup."""
        table = await self._options()
        if table is None:
            logger.warning("Options table %s does not exist, nothing to back up", self.options_table)
            self._backup = {}
            return {}

        name_col = table.c[self.name_column]
        value_col = table.c[self.value_column]
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(name_col, value_col).where(name_col.in_(self.protected_options))
            )
            self._backup = {row[0]: row[1] for row in result.all()}
        logger.info("Backed up %d protected options", len(self._backup))
        return dict(self._backup)

    async def restore_protected(self) -> int:
        """Write the backed-up options back and force the URL options.

        Returns the number of options written.
        """
        table = await self._options()
        if table is None:
            logger.warning("Options table %s does not exist, nothing to restore", self.options_table)
            return 0

        values = dict(self._backup)
        for name in self.url_options:
            values[name] = self.destination_url

        name_col = table.c[self.name_column]
        async with self.engine.begin() as conn:
            for name, value in values.items():
                result = await conn.execute(
                    table.update().where(name_col == name).values({self.value_column: value})
                )
                if not result.rowcount:
                    await conn.execute(
                        table.insert().values({self.name_column: name, self.value_column: value})
                    )
        logger.info("Restored %d protected options", len(values))
        return len(values)

    async def rewrite_urls(self, columns: Mapping[str, Iterable[str]] | None = None) -> int:
        """Replace the source URL in the given ``{table: [column, ...]}`` pairs.

        Rows are updated by primary key; tables without one are skipped.
        Returns the number of rows updated.
        """
        if self.source_url == self.destination_url:
            return 0
        targets = columns if columns is not None else self.rewrite_columns
        updated = 0
        for table_name, column_names in targets.items():
            try:
                table = await reflect_table(self.engine, table_name)
            except NoSuchTableError:
                logger.debug("Skipping URL rewrite in missing table %s", table_name)
                continue
            pk_columns = list(table.primary_key.columns)
            if not pk_columns:
                logger.warning("Skipping URL rewrite in %s: no primary key", table_name)
                continue
            for column_name in column_names:
                if column_name not in table.c:
                    logger.warning("Skipping unknown column %s.%s", table_name, column_name)
                    continue
                try:
                    updated += await self._rewrite_column(table, column_name)
                except SQLAlchemyError as exc:
                    logger.error("URL rewrite failed for %s.%s: %s", table_name, column_name, exc)
        logger.info("Rewrote %s -> %s in %d rows", self.source_url, self.destination_url, updated)
        return updated

    async def _rewrite_column(self, table: Table, column_name: str) -> int:
        column = table.c[column_name]
        pk_columns = list(table.primary_key.columns)
        updated = 0
        async with self.engine.begin() as conn:
            result = await conn.execute(
                select(*pk_columns, column).where(self._contains_source(column))
            )
            for row in result.mappings().all():
                old = row[column_name]
                new = replace_urls(old, self.source_url, self.destination_url)
                if new == old:
                    continue
                condition = [pk == row[pk.name] for pk in pk_columns]
                await conn.execute(table.update().where(*condition).values({column_name: new}))
                updated += 1
        return updated

    def _contains_source(self, column: Any) -> Any:
        escaped = self.source_url.replace("/", "\\/")
        return or_(
            column.contains(self.source_url, autoescape=True),
            column.contains(escaped, autoescape=True),
        )

    async def remaining_source_urls(self) -> int:
        """Count rows that still mention the source URL in the rewrite columns."""
        remaining = 0
        for table_name, column_names in self.rewrite_columns.items():
            try:
                table = await reflect_table(self.engine, table_name)
            except NoSuchTableError:
                continue
            async with self.engine.connect() as conn:
                for column_name in column_names:
                    if column_name not in table.c:
                        continue
                    result = await conn.execute(
                        select(func.count())
                        .select_from(table)
                        .where(self._contains_source(table.c[column_name]))
                    )
                    remaining += int(result.scalar_one())
        if remaining:
            logger.warning("%d rows still reference %s", remaining, self.source_url)
        return remaining
