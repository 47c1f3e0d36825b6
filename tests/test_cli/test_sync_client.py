"""Tests for the CLI sync control client."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, patch

import pytest

from cli.sync_client import (
    CONFIG_FILE,
    SyncControlClient,
    format_progress,
    load_config,
    main,
    validate_server_url,
)

if TYPE_CHECKING:
    from pathlib import Path


def _response(payload: dict[str, Any], status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def _client(sleeps: list[float]) -> SyncControlClient:
    client = SyncControlClient(
        "http://localhost:8000/", "token", poll_interval=0.5, sleep=sleeps.append
    )
    client.client = MagicMock()
    return client


class TestValidateServerUrl:
    def test_rejects_insecure_http_for_remote_hosts(self) -> None:
        with pytest.raises(ValueError, match="HTTPS is required"):
            validate_server_url("http://example.com")

    def test_allows_https_for_remote_hosts(self) -> None:
        assert validate_server_url("https://example.com/") == "https://example.com"

    def test_allows_http_for_localhost(self) -> None:
        assert validate_server_url("http://localhost:8000") == "http://localhost:8000"

    def test_allows_insecure_http_when_flag_enabled(self) -> None:
        assert (
            validate_server_url("http://example.com:8000", allow_insecure_http=True)
            == "http://example.com:8000"
        )

    def test_rejects_missing_scheme(self) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            validate_server_url("example.com")


class TestFormatProgress:
    def test_full_record(self) -> None:
        line = format_progress(
            {
                "status": "running",
                "progress": 42,
                "message": "Copying posts",
                "files_total": 10,
                "files_completed": 4,
                "files_errors": 1,
                "tables_total": 3,
                "tables_completed": 0,
                "tables_errors": 0,
            }
        )
        assert line == (
            "[running]  42% Copying posts | files 4/10 (1 errors) | tables 0/3 (0 errors)"
        )

    def test_counters_omitted_when_empty(self) -> None:
        line = format_progress({"status": "starting", "progress": 0, "message": "Queued"})
        assert line == "[starting]   0% Queued"

    def test_placeholder_statuses(self) -> None:
        assert format_progress({"status": "no_sync"}) == "[no_sync]"
        assert format_progress({"status": "not_found", "sync_id": "x"}) == "[not_found]"


class TestSyncControlClient:
    def test_start_returns_sync_id(self) -> None:
        client = _client([])
        client.client.post.return_value = _response({"sync_id": "abc", "status": "started"})

        assert client.start("https://source.example.com", "db", include_options=True) == "abc"
        client.client.post.assert_called_once_with(
            "/api/sync/start",
            json={
                "source_url": "https://source.example.com",
                "mode": "db",
                "include_options": True,
            },
        )

    def test_start_conflict_raises(self) -> None:
        client = _client([])
        client.client.post.return_value = _response(
            {"detail": "A sync is already running (abc)"}, status_code=409
        )
        with pytest.raises(RuntimeError, match="already running"):
            client.start("https://source.example.com")

    def test_wait_polls_until_terminal_status(self) -> None:
        sleeps: list[float] = []
        client = _client(sleeps)
        client.client.get.side_effect = [
            _response({"status": "starting", "progress": 0}),
            _response({"status": "running", "progress": 50}),
            _response({"status": "completed", "progress": 100}),
        ]
        updates: list[dict[str, Any]] = []

        final = client.wait("abc", on_update=updates.append)

        assert final["status"] == "completed"
        assert [u["progress"] for u in updates] == [0, 50, 100]
        assert sleeps == [0.5, 0.5]
        client.client.get.assert_called_with("/api/sync/progress", params={"sync_id": "abc"})

    @pytest.mark.parametrize("status", ["error", "timeout", "not_found"])
    def test_wait_stops_on_failure_statuses(self, status: str) -> None:
        sleeps: list[float] = []
        client = _client(sleeps)
        client.client.get.return_value = _response({"status": status})
        assert client.wait("abc")["status"] == status
        assert sleeps == []

    def test_progress_without_id_asks_for_current_sync(self) -> None:
        client = _client([])
        client.client.get.return_value = _response({"status": "no_sync"})
        assert client.progress() == {"status": "no_sync"}
        client.client.get.assert_called_once_with("/api/sync/progress", params={})


class TestMain:
    def test_init_writes_private_config(self, tmp_path: Path) -> None:
        main(["--dir", str(tmp_path), "--server", "http://localhost:8000/", "--token", "t", "init"])

        config_path = tmp_path / CONFIG_FILE
        assert json.loads(config_path.read_text()) == {
            "server": "http://localhost:8000",
            "token": "t",
        }
        assert config_path.stat().st_mode & 0o777 == 0o600
        assert load_config(tmp_path)["token"] == "t"

    def test_init_requires_server_and_token(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            main(["--dir", str(tmp_path), "init"])

    def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            main(["--dir", str(tmp_path), "status"])
        assert "No server configured" in capsys.readouterr().out

    def test_start_without_wait(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--dir", str(tmp_path), "--server", "http://localhost:8000", "--token", "t", "init"])
        with patch.object(SyncControlClient, "start", return_value="abc") as start:
            main(["--dir", str(tmp_path), "start", "https://source.example.com", "--no-wait"])

        start.assert_called_once_with("https://source.example.com", "full", False)
        assert "Started sync abc" in capsys.readouterr().out

    def test_failed_sync_exits_nonzero(self, tmp_path: Path) -> None:
        main(["--dir", str(tmp_path), "--server", "http://localhost:8000", "--token", "t", "init"])
        with (
            patch.object(SyncControlClient, "start", return_value="abc"),
            patch.object(SyncControlClient, "wait", return_value={"status": "error"}),
            pytest.raises(SystemExit) as excinfo,
        ):
            main(["--dir", str(tmp_path), "start", "https://source.example.com"])
        assert excinfo.value.code == 1
