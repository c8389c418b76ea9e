"""Configuration loading for pairlobby.

Settings come from ``~/.config/pairlobby/config.toml``; a handful of
environment variables override the file.
"""

import os
from pathlib import Path
from typing import Optional

import toml
from pydantic import BaseModel, Field

CONFIG_DIR = Path.home() / ".config" / "pairlobby"
CONFIG_PATH = CONFIG_DIR / "config.toml"

ENV_OVERRIDES = {
    "PAIRLOBBY_DB_PATH": "db_path",
    "PAIRLOBBY_VENUE_TOKEN": "venue_token",
    "PAIRLOBBY_VENUE_URL": "venue_url",
    "PAIRLOBBY_PRICE_URL": "price_url",
}

CONFIG_TEMPLATE = """# pairlobby configuration

[prices]
url = "https://api.binance.com/api/v3/ticker/price"
cache_ttl = 1.0
poll_interval = 2.0

[venue]
url = "https://hl-v2.pearprotocol.io"
ws_url = "wss://hl-v2.pearprotocol.io/ws"
# Bearer token for the live venue; PAIRLOBBY_VENUE_TOKEN overrides this
token = ""
confirm_attempts = 30
confirm_interval = 1.0
close_all_attempts = 60
timeout = 10.0

[sync]
interval = 2.0
"""


class Settings(BaseModel):
    """Typed runtime settings."""

    price_url: str = Field(
        default="https://api.binance.com/api/v3/ticker/price",
        description="Market data ticker endpoint",
    )
    price_cache_ttl: float = Field(default=1.0, gt=0, description="Seconds a price stays fresh")
    price_poll_interval: float = Field(default=2.0, gt=0, description="Price subscription interval")
    venue_url: str = Field(default="https://hl-v2.pearprotocol.io", description="Venue REST base URL")
    venue_ws_url: str = Field(default="wss://hl-v2.pearprotocol.io/ws", description="Venue stream URL")
    venue_token: str = Field(default="", description="Venue bearer token")
    confirm_attempts: int = Field(default=30, ge=1, description="Polls before an order is unconfirmed")
    confirm_interval: float = Field(default=1.0, ge=0, description="Seconds between confirmation polls")
    close_all_attempts: int = Field(default=60, ge=1, description="Polls for a bulk close")
    request_timeout: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds")
    sync_interval: float = Field(default=2.0, gt=0, description="Valuation sync interval")
    db_path: Path = Field(default=CONFIG_DIR / "pairlobby.db", description="SQLite database file")

    model_config = {"frozen": True}


def _from_toml(data: dict) -> dict:
    """Flatten the sectioned config file into Settings fields."""
    prices = data.get("prices", {})
    venue = data.get("venue", {})
    sync = data.get("sync", {})
    database = data.get("database", {})

    mapping = {
        "price_url": prices.get("url"),
        "price_cache_ttl": prices.get("cache_ttl"),
        "price_poll_interval": prices.get("poll_interval"),
        "venue_url": venue.get("url"),
        "venue_ws_url": venue.get("ws_url"),
        "venue_token": venue.get("token"),
        "confirm_attempts": venue.get("confirm_attempts"),
        "confirm_interval": venue.get("confirm_interval"),
        "close_all_attempts": venue.get("close_all_attempts"),
        "request_timeout": venue.get("timeout"),
        "sync_interval": sync.get("interval"),
        "db_path": database.get("path"),
    }
    return {key: value for key, value in mapping.items() if value is not None}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from the config file and environment.

    Args:
        config_path: Config file to read. Defaults to ``~/.config/pairlobby/config.toml``.

    Returns:
        Settings with environment overrides applied.

    Raises:
        toml.TomlDecodeError: If the config file is malformed.
    """
    path = config_path or CONFIG_PATH
    values: dict = {}
    if path.exists():
        values.update(_from_toml(toml.load(path)))

    for env_var, field in ENV_OVERRIDES.items():
        if os.environ.get(env_var):
            values[field] = os.environ[env_var]

    if "db_path" in values:
        values["db_path"] = Path(values["db_path"]).expanduser()

    return Settings(**values)


def write_template(config_path: Optional[Path] = None, overwrite: bool = False) -> Path:
    """Write the template config file.

    Returns:
        Path of the config file.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is False.
    """
    path = config_path or CONFIG_PATH
    if path.exists() and not overwrite:
        raise FileExistsError(f"Config file already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CONFIG_TEMPLATE)
    return path
