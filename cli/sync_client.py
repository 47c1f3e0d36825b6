"""CLI client for the SiteSync control API: start a sync and follow its progress."""

from __future__ import annotations

import argparse
import json
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

try:
    import httpx
except ImportError:
    print("Error: httpx is required. Install with: pip install httpx")
    sys.exit(1)

CONFIG_FILE = ".sitesync-client.json"
TERMINAL_STATUSES = frozenset({"completed", "error", "timeout", "not_found"})
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SyncControlClient:
    """Client for the ``/api/sync`` control endpoints of a SiteSync instance."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.client = httpx.Client(
            base_url=self.server_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> SyncControlClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def start(self, source_url: str, mode: str = "full", include_options: bool = False) -> str:
        """Start a sync on the server. Returns its sync id."""
        resp = self.client.post(
            "/api/sync/start",
            json={"source_url": source_url, "mode": mode, "include_options": include_options},
        )
        if resp.status_code == 409:
            raise RuntimeError(resp.json().get("detail", "A sync is already running"))
        resp.raise_for_status()
        sync_id: str = resp.json()["sync_id"]
        return sync_id

    def progress(self, sync_id: str | None = None) -> dict[str, Any]:
        """Return the progress record of ``sync_id``, or of the current sync."""
        params = {"sync_id": sync_id} if sync_id else {}
        resp = self.client.get("/api/sync/progress", params=params)
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()
        return data

    def status(self) -> dict[str, Any]:
        """Return whether the server has an active sync."""
        resp = self.client.get("/api/sync/status")
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()
        return data

    def wait(
        self,
        sync_id: str,
        on_update: Callable[[dict[str, Any]], None] | None = None,
    ) -> dict[str, Any]:
        """Poll progress every ``poll_interval`` seconds until a terminal status."""
        while True:
            record = self.progress(sync_id)
            if on_update is not None:
                on_update(record)
            if record.get("status") in TERMINAL_STATUSES:
                return record
            self._sleep(self.poll_interval)


def format_progress(record: dict[str, Any]) -> str:
    """Render a progress record as one status line."""
    status = record.get("status", "unknown")
    if status in ("not_found", "no_sync"):
        return f"[{status}]"
    line = f"[{status}] {record.get('progress', 0):3d}% {record.get('message', '')}"
    if record.get("files_total"):
        line += (
            f" | files {record.get('files_completed', 0)}/{record['files_total']}"
            f" ({record.get('files_errors', 0)} errors)"
        )
    if record.get("tables_total"):
        line += (
            f" | tables {record.get('tables_completed', 0)}/{record['tables_total']}"
            f" ({record.get('tables_errors', 0)} errors)"
        )
    return line


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load client config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save client config to file, readable only by the owner."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))
    config_path.chmod(0o600)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="sitesync-client",
        description="Start and follow SiteSync replication runs",
    )
    parser.add_argument("--dir", "-d", default=".", help="Config directory (default: current)")
    parser.add_argument("--server", "-s", help="Destination server URL")
    parser.add_argument("--token", "-t", help="Admin token of the destination server")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save server and token configuration")
    start_parser = subparsers.add_parser("start", help="Start a sync and follow it")
    start_parser.add_argument("source", help="URL of the source instance")
    start_parser.add_argument(
        "--mode", choices=["files", "db", "full"], default="full", help="What to replicate"
    )
    start_parser.add_argument(
        "--include-options", action="store_true", help="Also replicate the options table"
    )
    start_parser.add_argument(
        "--no-wait", action="store_true", help="Return after scheduling the sync"
    )
    progress_parser = subparsers.add_parser("progress", help="Show sync progress")
    progress_parser.add_argument("--sync-id", help="Sync id (default: current sync)")
    subparsers.add_parser("status", help="Show whether a sync is active")

    args = parser.parse_args(argv)
    config_dir = Path(args.dir).resolve()

    if args.command == "init":
        if not args.server or not args.token:
            print("Error: --server and --token required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        save_config(config_dir, {"server": server_url, "token": args.token})
        print(f"Initialized client config in {config_dir / CONFIG_FILE}")
        return

    if args.command is None:
        parser.print_help()
        return

    config = load_config(config_dir)
    configured_server_url = args.server or config.get("server")
    token = args.token or config.get("token")
    if not configured_server_url or not token:
        print("Error: No server configured. Run 'sitesync-client init --server <url> --token <t>'.")
        sys.exit(1)
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    with SyncControlClient(server_url, token) as client:
        try:
            if args.command == "start":
                sync_id = client.start(args.source, args.mode, args.include_options)
                print(f"Started sync {sync_id}")
                if args.no_wait:
                    return
                final = client.wait(sync_id, on_update=lambda r: print(format_progress(r)))
                if final.get("status") != "completed":
                    sys.exit(1)
            elif args.command == "progress":
                print(format_progress(client.progress(args.sync_id)))
            elif args.command == "status":
                status = client.status()
                if status.get("has_active_sync"):
                    print(f"Active sync {status.get('sync_id')} ({status.get('status')})")
                else:
                    print("No active sync")
        except (httpx.HTTPError, RuntimeError) as exc:
            print(f"Error: {exc}")
            sys.exit(1)


if __name__ == "__main__":
    main()
