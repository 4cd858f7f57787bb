"""Configuration management for the sealedlog CLI.

Manages ``$XDG_CONFIG_HOME/sealedlog/config.yaml`` (default
``~/.config/sealedlog/config.yaml``)::

    address: "0x..."          # default identity for commands
    url: https://log.example  # remote log server (omit for local)
    path: ~/chats             # local data directory (omit for default)
    transcript_limit: 50
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .options import DEFAULT_TRANSCRIPT_LIMIT, ConfigError, MessengerOptions


FIELDS = ("address", "url", "path", "transcript_limit")


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "sealedlog"


def get_global_config_path() -> Path:
    """Get the global config file path."""
    return get_config_dir() / "config.yaml"


def ensure_config_dir() -> Path:
    """Ensure config directory exists and return its path."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@dataclass
class GlobalConfig:
    """Global CLI configuration."""

    address: str | None = None
    url: str | None = None
    path: str | None = None
    transcript_limit: int = DEFAULT_TRANSCRIPT_LIMIT

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        data: dict[str, Any] = {}
        if self.address:
            data["address"] = self.address
        if self.url:
            data["url"] = self.url
        if self.path:
            data["path"] = self.path
        data["transcript_limit"] = self.transcript_limit
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "GlobalConfig":
        """Create from dictionary."""
        try:
            limit = int(data.get("transcript_limit", DEFAULT_TRANSCRIPT_LIMIT))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"transcript_limit must be an integer: {e}") from e
        return cls(
            address=data.get("address"),
            url=data.get("url"),
            path=data.get("path"),
            transcript_limit=limit,
        )

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        with open(get_global_config_path(), "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults."""
        path = get_global_config_path()

        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_global_config_path().exists()

    def set(self, key: str, value: str | None) -> None:
        """Set one field from a string value (None or "" clears it)."""
        if key not in FIELDS:
            raise ConfigError(f"Unknown config key: {key} (expected one of {', '.join(FIELDS)})")
        if key == "transcript_limit":
            try:
                self.transcript_limit = int(value) if value else DEFAULT_TRANSCRIPT_LIMIT
            except ValueError as e:
                raise ConfigError(f"transcript_limit must be an integer, got {value!r}") from e
        else:
            setattr(self, key, value or None)

    def to_options(
        self,
        url: str | None = None,
        path: str | None = None,
        in_memory: bool = False,
    ) -> MessengerOptions:
        """
        Build MessengerOptions, letting explicit arguments win over the file.

        An explicit url ignores the file's path and vice versa.
        """
        if in_memory:
            return MessengerOptions(in_memory=True, transcript_limit=self.transcript_limit)
        if url is not None:
            return MessengerOptions(url=url, transcript_limit=self.transcript_limit)
        if path is not None:
            return MessengerOptions(path=path, transcript_limit=self.transcript_limit)
        return MessengerOptions(
            url=self.url,
            path=None if self.url else self.path,
            transcript_limit=self.transcript_limit,
        )
