"""Shared test fixtures for SiteSync."""

from __future__ import annotations

import base64
import hashlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.config import Settings
from backend.database import create_engine, init_models
from backend.main import create_app
from backend.services.orchestrator import SyncOrchestrator, TransportFactory
from backend.services.problem_files import ProblemFileRegistry
from backend.services.progress_service import ProgressReporter
from backend.services.transport import TransportClient

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from fastapi import FastAPI

TEST_SYNC_SECRET = "test-sync-secret-with-at-least-32-characters"
TEST_ADMIN_TOKEN = "test-admin-token-with-at-least-32-characters"


def make_settings(tmp_path: Path, name: str = "dest", **overrides: Any) -> Settings:
    """Build settings for one instance rooted under ``tmp_path / name``."""
    base = tmp_path / name
    uploads = base / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    values: dict[str, Any] = {
        "debug": True,
        "database_url": f"sqlite+aiosqlite:///{base / 'sitesync.db'}",
        "sync_secret": TEST_SYNC_SECRET,
        "admin_token": TEST_ADMIN_TOKEN,
        "site_url": f"http://{name}.test",
        "sync_directories": {"uploads": uploads},
        "retry_delay": 0,
        "download_retry_delay": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def install_services(
    app: FastAPI,
    settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    transport_factory: TransportFactory | None = None,
) -> None:
    """Populate app state the way the lifespan does."""
    reporter = ProgressReporter(
        session_factory, retention_seconds=settings.progress_retention_seconds
    )
    problem_files = ProblemFileRegistry(
        session_factory,
        max_attempts=settings.problem_file_max_attempts,
        cooldown_seconds=settings.problem_file_cooldown_seconds,
    )
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings
    app.state.progress_reporter = reporter
    app.state.problem_files = problem_files
    app.state.orchestrator = SyncOrchestrator(
        settings,
        engine,
        session_factory,
        reporter,
        problem_files,
        transport_factory=transport_factory,
    )


@asynccontextmanager
async def create_test_app(
    settings: Settings,
    transport_factory: TransportFactory | None = None,
) -> AsyncGenerator[FastAPI]:
    """Create a fully initialized app.

    Performs the work of the application lifespan because ASGITransport does
    not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    engine, session_factory = create_engine(settings)
    await init_models(engine)
    install_services(app, settings, engine, session_factory, transport_factory)
    try:
        yield app
    finally:
        await engine.dispose()


@asynccontextmanager
async def create_test_client(
    settings: Settings,
    transport_factory: TransportFactory | None = None,
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app."""
    async with (
        create_test_app(settings, transport_factory) as app,
        AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac,
    ):
        yield ac


def asgi_transport_factory(source_app: FastAPI) -> TransportFactory:
    """Transport factory whose clients talk to ``source_app`` in-process."""

    def factory(source_url: str) -> TransportClient:
        return TransportClient(
            source_url,
            TEST_SYNC_SECRET,
            retry_delay=0,
            transport=ASGITransport(app=source_app),
        )

    return factory


class FakeSource:
    """In-memory stand-in for a peer's replication endpoints.

    ``tables`` maps table name to (DDL, rows). ``files`` maps directory key to
    ``{relative_path: bytes}``. Every request is recorded in ``requests`` as
    ``(endpoint, params)``.
    """

    def __init__(
        self,
        tables: dict[str, tuple[str, list[dict[str, Any]]]] | None = None,
        files: dict[str, dict[str, bytes]] | None = None,
        listing: list[dict[str, Any]] | None = None,
    ) -> None:
        self.tables = tables or {}
        self.files = files or {}
        self.listing = listing
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.overrides: dict[str, Callable[[dict[str, str]], httpx.Response]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        params = dict(request.url.params)
        self.requests.append((endpoint, params))
        if endpoint in self.overrides:
            return self.overrides[endpoint](params)
        if endpoint == "tables":
            listing = self.listing
            if listing is None:
                listing = [
                    {"name": name, "count": len(rows)} for name, (_, rows) in self.tables.items()
                ]
            return httpx.Response(200, json=listing)
        if endpoint == "table-structure":
            ddl, _ = self.tables[params["table"]]
            return httpx.Response(200, json={"table": params["table"], "create_statement": ddl})
        if endpoint == "table-rows":
            _, rows = self.tables[params["table"]]
            offset, limit = int(params["offset"]), int(params["limit"])
            return httpx.Response(200, json=rows[offset : offset + limit])
        if endpoint == "files":
            return httpx.Response(200, json=self.file_listing(params["directory"]))
        if endpoint == "file-content":
            data = self.files[params["directory"]][params["file"]]
            return httpx.Response(200, json=content_payload(params["file"], data))
        return httpx.Response(404, json={"detail": "Not found"})

    def file_listing(self, directory: str) -> list[dict[str, Any]]:
        return [
            {
                "relative_path": path,
                "size": len(data),
                "hash": hashlib.sha256(data).hexdigest(),
                "modified": "2026-01-01T00:00:00+00:00",
            }
            for path, data in sorted(self.files.get(directory, {}).items())
        ]

    def client(self, **kwargs: Any) -> TransportClient:
        """Build a transport client served by this fake."""
        kwargs.setdefault("retry_delay", 0)
        return TransportClient(
            "http://source.test",
            TEST_SYNC_SECRET,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.requests]


def content_payload(name: str, data: bytes) -> dict[str, Any]:
    """Build a file-content response body the way the peer endpoint does."""
    try:
        content = data.decode("utf-8")
        is_binary = False
    except UnicodeDecodeError:
        content = base64.b64encode(data).decode("ascii")
        is_binary = True
    return {
        "file": name,
        "size": len(data),
        "hash": hashlib.sha256(data).hexdigest(),
        "modified": "2026-01-01T00:00:00+00:00",
        "is_binary": is_binary,
        "content": content,
        "encoding": "base64" if is_binary else "utf8",
    }


POSTS_DDL = "CREATE TABLE posts (id INTEGER PRIMARY KEY, title TEXT, body TEXT)"
OPTIONS_DDL = (
    "CREATE TABLE options (option_id INTEGER PRIMARY KEY, "
    "option_name TEXT UNIQUE, option_value TEXT)"
)


async def seed_posts(engine: AsyncEngine, count: int, body: str = "") -> None:
    """Create a ``posts`` table holding ``count`` rows."""
    async with engine.begin() as conn:
        await conn.exec_driver_sql(POSTS_DDL)
        for i in range(1, count + 1):
            await conn.execute(
                text("INSERT INTO posts (id, title, body) VALUES (:id, :title, :body)"),
                {"id": i, "title": f"Post {i}", "body": body},
            )


async def seed_options(engine: AsyncEngine, values: dict[str, str]) -> None:
    """Create an ``options`` table holding ``values`` in insertion order."""
    async with engine.begin() as conn:
        await conn.exec_driver_sql(OPTIONS_DDL)
        for name, value in values.items():
            await conn.execute(
                text("INSERT INTO options (option_name, option_value) VALUES (:n, :v)"),
                {"n": name, "v": value},
            )


async def table_rows(engine: AsyncEngine, sql: str) -> list[tuple[Any, ...]]:
    async with engine.connect() as conn:
        result = await conn.execute(text(sql))
        return [tuple(row) for row in result.all()]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    return make_settings(tmp_path)


@pytest.fixture
def sync_root(test_settings: Settings) -> Path:
    """The ``uploads`` sync directory of the test settings."""
    return test_settings.sync_directories["uploads"]


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the bookkeeping tables."""
    engine, _ = create_engine(test_settings)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def reporter(session_factory: async_sessionmaker[AsyncSession]) -> ProgressReporter:
    return ProgressReporter(session_factory, retention_seconds=3600)


@pytest.fixture
def problem_files(session_factory: async_sessionmaker[AsyncSession]) -> ProblemFileRegistry:
    return ProblemFileRegistry(session_factory, max_attempts=5, cooldown_seconds=3600)
