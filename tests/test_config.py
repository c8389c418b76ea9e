"""Tests for config loading."""

from pathlib import Path

import pytest
import toml

from pairlobby.config import CONFIG_TEMPLATE, Settings, load_settings, write_template


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("PAIRLOBBY_DB_PATH", "PAIRLOBBY_VENUE_TOKEN", "PAIRLOBBY_VENUE_URL", "PAIRLOBBY_PRICE_URL"):
        monkeypatch.delenv(var, raising=False)


def test_missing_file_gives_defaults(tmp_path: Path):
    settings = load_settings(tmp_path / "absent.toml")

    assert settings == Settings()
    assert settings.confirm_attempts == 30
    assert settings.close_all_attempts == 60


def test_template_round_trips_to_defaults(tmp_path: Path):
    path = write_template(tmp_path / "config.toml")

    assert path.read_text() == CONFIG_TEMPLATE
    settings = load_settings(path)
    defaults = Settings()
    assert settings.venue_url == defaults.venue_url
    assert settings.price_url == defaults.price_url
    assert settings.sync_interval == defaults.sync_interval


def test_sections_map_to_fields(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text(
        toml.dumps(
            {
                "prices": {"cache_ttl": 0.5},
                "venue": {"token": "abc", "confirm_attempts": 5, "timeout": 3},
                "sync": {"interval": 7},
                "database": {"path": str(tmp_path / "data.db")},
            }
        )
    )

    settings = load_settings(path)

    assert settings.price_cache_ttl == 0.5
    assert settings.venue_token == "abc"
    assert settings.confirm_attempts == 5
    assert settings.request_timeout == 3
    assert settings.sync_interval == 7
    assert settings.db_path == tmp_path / "data.db"


def test_environment_overrides_file(tmp_path: Path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(toml.dumps({"venue": {"token": "from-file"}}))
    monkeypatch.setenv("PAIRLOBBY_VENUE_TOKEN", "from-env")
    monkeypatch.setenv("PAIRLOBBY_DB_PATH", str(tmp_path / "env.db"))

    settings = load_settings(path)

    assert settings.venue_token == "from-env"
    assert settings.db_path == tmp_path / "env.db"


def test_invalid_values_are_rejected(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text(toml.dumps({"venue": {"confirm_attempts": 0}}))

    with pytest.raises(ValueError):
        load_settings(path)


def test_malformed_file_raises(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("[venue\nurl = ")

    with pytest.raises(toml.TomlDecodeError):
        load_settings(path)


def test_template_is_not_overwritten(tmp_path: Path):
    path = write_template(tmp_path / "config.toml")
    path.write_text("# edited")

    with pytest.raises(FileExistsError):
        write_template(path)
    write_template(path, overwrite=True)
    assert path.read_text() == CONFIG_TEMPLATE
