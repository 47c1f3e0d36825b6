"""HTTP transport to a peer SiteSync instance.

This module provides:
- TransportClient: authenticated GET requests with per-request timeouts
- fetch_with_retry: bounded retry of timeout-class failures
- get_json: status mapping (401/403 -> AuthError, other non-200 -> RemoteError)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from backend.exceptions import AuthError, RemoteError, TransportError, TransportTimeoutError

logger = logging.getLogger(__name__)

REPLICATION_PREFIX = "/api/replication"
TOKEN_HEADER = "X-Sync-Token"

DEFAULT_TIMEOUT = 60.0
DEFAULT_RETRY_DELAY = 2.0


class TransportClient:
    """Client for the peer replication endpoints.

    TLS certificate verification is off by default: source and destination
    are usually staging copies of the same site, often behind self-signed
    certificates. Pass ``verify=True`` to enforce it.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify: bool = False,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        default_timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={TOKEN_HEADER: token, "User-Agent": "SiteSync replication client"},
            verify=verify,
            timeout=default_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> TransportClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def fetch(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, bytes]:
        """Issue one GET request. Returns (status_code, body).

        Raises TransportTimeoutError on timeouts, TransportError on any other
        network failure. HTTP error statuses are returned, not raised.
        """
        kwargs: dict[str, Any] = {"params": params or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self.client.get(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportTimeoutError(f"Request to {path} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"Request to {path} failed: {exc}") from exc
        return resp.status_code, resp.content

    async def fetch_with_retry(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        max_attempts: int = 3,
    ) -> tuple[int, bytes]:
        """Issue a GET request, retrying only timeout-class failures.

        Sleeps ``retry_delay`` seconds between attempts. Any other transport
        failure is raised immediately; after ``max_attempts`` timeouts the
        last one is raised.
        """
        attempts = max(1, max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.fetch(path, params, timeout)
            except TransportTimeoutError as exc:
                if attempt == attempts:
                    logger.error("All %d attempts timed out for %s", attempts, path)
                    raise
                logger.warning(
                    "Attempt %d/%d timed out for %s: %s. Retrying in %.1fs...",
                    attempt,
                    attempts,
                    path,
                    exc,
                    self.retry_delay,
                )
                await self._sleep(self.retry_delay)
        raise RuntimeError("Unexpected retry loop exit")

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        max_attempts: int = 1,
    ) -> Any:
        """GET a JSON document from the peer.

        Raises AuthError on 401/403, RemoteError on any other non-200 status or
        an undecodable body, and the transport errors of ``fetch_with_retry``.
        """
        status_code, body = await self.fetch_with_retry(path, params, timeout, max_attempts)
        if status_code in (401, 403):
            raise AuthError(f"Peer rejected the sync token ({status_code}) for {path}")
        if status_code != 200:
            raise RemoteError(
                f"Peer returned HTTP {status_code} for {path}: {_detail(body)}",
                status_code=status_code,
            )
        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RemoteError(f"Invalid JSON from {path}: {exc}", status_code=200) from exc

    async def ping(self, timeout: float = 10.0) -> bool:
        """Return True when the peer's health endpoint answers 200."""
        try:
            status_code, _ = await self.fetch("/api/health", timeout=timeout)
        except TransportError as exc:
            logger.info("Peer %s unreachable: %s", self.base_url, exc)
            return False
        return status_code == 200


def replication_path(endpoint: str) -> str:
    """Return the path of a peer replication endpoint."""
    return f"{REPLICATION_PREFIX}/{endpoint.lstrip('/')}"


def _detail(body: bytes, limit: int = 200) -> str:
    """Extract a short error detail from a response body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body[:limit].decode("utf-8", errors="replace")
    if isinstance(data, dict) and "detail" in data:
        return str(data["detail"])[:limit]
    return str(data)[:limit]
