"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from streampay_indexer.__main__ import EXIT_FAILURE, EXIT_OK, EXIT_TIMEOUT, build_parser, main
from streampay_indexer.config import clear_settings_cache

CONTRACT = "0x" + "c0" * 20

_ENV_VARS = (
    "DATABASE_URL",
    "REDIS_URL",
    "RPC_URL",
    "CHAIN_ID",
    "CONTRACT_ADDRESS",
    "START_BLOCK",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def sqlite_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("CONTRACT_ADDRESS", CONTRACT)
    clear_settings_cache()
    yield db_path
    clear_settings_cache()


class TestParser:
    def test_wait_arguments(self) -> None:
        args = build_parser().parse_args(
            ["wait", "0xabc", "--timeout-ms", "500", "--poll-interval-ms", "50"]
        )

        assert args.command == "wait"
        assert args.tx_hash == "0xabc"
        assert args.timeout_ms == 500
        assert args.poll_interval_ms == 50

    def test_leaderboard_kind_is_validated(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["leaderboard", "whales"])

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_run_without_rpc_url_fails(self) -> None:
        assert main(["run"]) == EXIT_FAILURE

    def test_missing_database_url_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")
        clear_settings_cache()

        assert main(["status"]) == EXIT_FAILURE

    def test_init_db_then_status(self, sqlite_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["init-db"]) == EXIT_OK
        assert sqlite_env.exists()

        assert main(["status"]) == EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["contract_address"] == CONTRACT
        assert status["last_processed_block"] is None
        assert status["metrics"]["total_streams"] == 0
        assert status["metrics"]["total_volume"] == "0"

    def test_reset_cursor_reports_deleted(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["init-db"]) == EXIT_OK
        capsys.readouterr()

        assert main(["reset-cursor"]) == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {"deleted": 0}

    def test_wait_times_out(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["init-db"]) == EXIT_OK
        capsys.readouterr()

        code = main(["wait", "0x" + "ab" * 32, "--timeout-ms", "50", "--poll-interval-ms", "10"])

        assert code == EXIT_TIMEOUT
        assert json.loads(capsys.readouterr().out)["outcome"] == "timeout"

    def test_empty_leaderboard(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["init-db"]) == EXIT_OK
        capsys.readouterr()

        assert main(["leaderboard", "senders", "--limit", "5"]) == EXIT_OK
        assert json.loads(capsys.readouterr().out) == []
