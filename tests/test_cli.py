"""Smoke tests for the lobby and ledger commands."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from pairlobby.cli import cli


@pytest.fixture
def runner(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("PAIRLOBBY_DB_PATH", str(tmp_path / "cli.db"))
    return CliRunner()


def test_lobby_lifecycle(runner: CliRunner):
    result = runner.invoke(cli, ["lobby", "create", "demo", "--buy-in", "1000"])
    assert result.exit_code == 0, result.output
    assert "Lobby Created" in result.output

    result = runner.invoke(cli, ["lobby", "join", "demo", "--player", "0xABC"])
    assert result.exit_code == 0, result.output
    assert "0xabc" in result.output

    result = runner.invoke(cli, ["lobby", "join", "demo"], env={"PAIRLOBBY_PLAYER": "0xabc"})
    assert result.exit_code == 1

    result = runner.invoke(cli, ["lobby", "list"])
    assert result.exit_code == 0, result.output
    assert "demo" in result.output

    result = runner.invoke(cli, ["leaderboard", "demo"])
    assert result.exit_code == 0, result.output
    assert "0xabc" in result.output

    result = runner.invoke(cli, ["history", "demo", "--player", "0xabc"])
    assert result.exit_code == 0, result.output
    assert "1,000.00" in result.output


def test_duplicate_and_missing_lobby(runner: CliRunner):
    assert runner.invoke(cli, ["lobby", "create", "demo", "--buy-in", "10"]).exit_code == 0
    assert runner.invoke(cli, ["lobby", "create", "demo", "--buy-in", "10"]).exit_code == 1
    assert runner.invoke(cli, ["lobby", "show", "nope"]).exit_code == 1
    assert runner.invoke(cli, ["lobby", "create", "long", "--buy-in", "10", "--hours", "30"]).exit_code == 1


def test_empty_queues(runner: CliRunner):
    runner.invoke(cli, ["lobby", "create", "demo", "--buy-in", "10"])

    result = runner.invoke(cli, ["reconcile"])
    assert result.exit_code == 0, result.output
    assert "Nothing to reconcile" in result.output

    result = runner.invoke(cli, ["positions", "demo", "--player", "0xabc"])
    assert result.exit_code == 0, result.output
    assert "No open positions" in result.output

    assert runner.invoke(cli, ["reconcile", "--resolve", "7"]).exit_code == 1


def test_config_init(runner: CliRunner, tmp_path: Path):
    path = tmp_path / "config.toml"

    assert runner.invoke(cli, ["config", "init", "--path", str(path)]).exit_code == 0
    assert path.exists()
    assert runner.invoke(cli, ["config", "init", "--path", str(path)]).exit_code == 1
    assert runner.invoke(cli, ["config", "init", "--path", str(path), "--force"]).exit_code == 0


@pytest.mark.parametrize("leverage", ["0", "-2"])
def test_open_rejects_non_positive_leverage(runner: CliRunner, leverage: str):
    runner.invoke(cli, ["lobby", "create", "demo", "--buy-in", "1000"])

    result = runner.invoke(cli, ["open", "demo", "BTC", "ETH", "500", "-l", leverage, "--player", "0xabc"])

    assert result.exit_code == 2
    assert not isinstance(result.exception, ZeroDivisionError)
    assert "--leverage" in result.output
