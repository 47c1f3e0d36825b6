"""Peer endpoints: the source side of table and file replication."""

from __future__ import annotations

import base64
import hashlib
import logging
import stat
from pathlib import Path
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.api.deps import get_engine, get_settings, require_sync_token
from backend.config import Settings
from backend.filesystem.file_policy import check_file_request, is_file_type_allowed
from backend.models.sync import INTERNAL_TABLES
from backend.services.datetime_service import format_iso, parse_timestamp
from backend.services.file_differ import hash_file, scan_local
from backend.services.row_codec import encode_row
from backend.services.table_store import (
    count_rows,
    fetch_rows,
    get_create_statement,
    list_table_names,
    reflect_table,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/replication",
    tags=["replication"],
    dependencies=[Depends(require_sync_token)],
)


# ── Schemas ──────────────────────────────────────────


class TableInfo(BaseModel):
    """A table offered for replication."""

    name: str
    count: int


class TableStructureResponse(BaseModel):
    """DDL of one table."""

    table: str
    create_statement: str


class FileListEntry(BaseModel):
    """One file in a directory listing."""

    relative_path: str
    size: int
    hash: str
    modified: str | None


class FileContentResponse(BaseModel):
    """File content, base64 encoded when it is not UTF-8 text."""

    file: str
    size: int
    hash: str
    modified: str
    is_binary: bool
    content: str
    encoding: str


class FileInfoResponse(BaseModel):
    """File metadata without content."""

    file: str
    size: int
    hash: str
    modified: str
    is_readable: bool
    permissions: str


# ── Helpers ──────────────────────────────────────────


def _excluded_tables(settings: Settings, include_options: bool) -> set[str]:
    excluded = set(INTERNAL_TABLES)
    excluded.update(settings.prefixed(name) for name in settings.exclude_tables)
    if not include_options:
        excluded.add(settings.prefixed(settings.options_table))
    return excluded


async def replicable_tables(
    engine: AsyncEngine, settings: Settings, include_options: bool
) -> list[str]:
    """Return the names of tables this instance serves, unordered."""
    excluded = _excluded_tables(settings, include_options)
    return [
        name
        for name in await list_table_names(engine)
        if name.startswith(settings.table_prefix) and name not in excluded
    ]


async def _require_table(engine: AsyncEngine, settings: Settings, table: str) -> None:
    # The options table is always servable on request; only the listing hides it.
    if table not in await replicable_tables(engine, settings, include_options=True):
        raise HTTPException(status_code=400, detail="Invalid table")


def _directory_root(settings: Settings, directory: str) -> Path:
    root = settings.sync_directories.get(directory)
    if root is None:
        raise HTTPException(status_code=400, detail="Invalid directory")
    return root


def _modified(path: Path) -> str:
    modified = parse_timestamp(path.stat().st_mtime)
    return format_iso(modified) if modified else ""


# ── Endpoints ────────────────────────────────────────


@router.get("/tables", response_model=list[TableInfo])
async def list_tables(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> list[TableInfo]:
    """List replicable tables, smallest first."""
    tables: list[TableInfo] = []
    for name in await replicable_tables(engine, settings, settings.include_options):
        table = await reflect_table(engine, name)
        tables.append(TableInfo(name=name, count=await count_rows(engine, table)))
    tables.sort(key=lambda t: (t.count, t.name))
    return tables


@router.get("/table-structure", response_model=TableStructureResponse)
async def table_structure(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
    settings: Annotated[Settings, Depends(get_settings)],
    table: Annotated[str, Query(min_length=1)],
) -> TableStructureResponse:
    """Return the CREATE TABLE statement of one table."""
    await _require_table(engine, settings, table)
    statement = await get_create_statement(engine, table)
    if not statement:
        raise HTTPException(status_code=404, detail="Table structure not found")
    return TableStructureResponse(table=table, create_statement=statement)


@router.get("/table-rows")
async def table_rows(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
    settings: Annotated[Settings, Depends(get_settings)],
    table: Annotated[str, Query(min_length=1)],
    offset: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1)] = 50,
) -> list[dict[str, Any]]:
    """Return one window of rows; an empty list marks the end of the table."""
    await _require_table(engine, settings, table)
    try:
        reflected = await reflect_table(engine, table)
    except NoSuchTableError as exc:
        raise HTTPException(status_code=400, detail="Invalid table") from exc
    rows = await fetch_rows(engine, reflected, offset, min(limit, settings.max_rows_per_request))
    return [encode_row(row) for row in rows]


@router.get("/files", response_model=list[FileListEntry])
async def list_files(
    settings: Annotated[Settings, Depends(get_settings)],
    directory: Annotated[str, Query(min_length=1)],
) -> list[FileListEntry]:
    """List syncable files of one directory."""
    root = _directory_root(settings, directory)

    def include(relative_path: str) -> bool:
        return is_file_type_allowed(
            relative_path, settings.allowed_extensions, settings.blocked_extensions
        )

    records = scan_local(root, max_files=settings.max_scan_files, include=include)
    return [FileListEntry(**record.to_dict()) for record in records]


@router.get("/file-content", response_model=FileContentResponse)
async def file_content(
    settings: Annotated[Settings, Depends(get_settings)],
    directory: Annotated[str, Query(min_length=1)],
    file: Annotated[str, Query(min_length=1)],
) -> FileContentResponse:
    """Return the content of one file."""
    root = _directory_root(settings, directory)
    full_path = check_file_request(
        root, file, settings.allowed_extensions, settings.blocked_extensions
    )
    if not full_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    size = full_path.stat().st_size
    if size > settings.max_file_size:
        raise HTTPException(status_code=413, detail="File too large")

    data = full_path.read_bytes()
    try:
        content = data.decode("utf-8")
        is_binary = False
    except UnicodeDecodeError:
        content = base64.b64encode(data).decode("ascii")
        is_binary = True

    return FileContentResponse(
        file=file,
        size=len(data),
        hash=hashlib.sha256(data).hexdigest(),
        modified=_modified(full_path),
        is_binary=is_binary,
        content=content,
        encoding="base64" if is_binary else "utf8",
    )


@router.get("/file-info", response_model=FileInfoResponse)
async def file_info(
    settings: Annotated[Settings, Depends(get_settings)],
    directory: Annotated[str, Query(min_length=1)],
    file: Annotated[str, Query(min_length=1)],
) -> FileInfoResponse:
    """Return metadata of one file."""
    root = _directory_root(settings, directory)
    full_path = check_file_request(
        root, file, settings.allowed_extensions, settings.blocked_extensions
    )
    if not full_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    st = full_path.stat()
    digest = hash_file(full_path)
    return FileInfoResponse(
        file=file,
        size=st.st_size,
        hash=digest,
        modified=_modified(full_path),
        is_readable=bool(st.st_mode & stat.S_IRUSR),
        permissions=oct(stat.S_IMODE(st.st_mode))[2:].zfill(4),
    )
