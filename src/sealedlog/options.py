"""Configuration options for the Messenger client.

Provides MessengerOptions for choosing the record log and keystore and for
tuning transcript and publish behavior. Supports environment variable
overrides for CI/CD and containerized deployments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import SealedlogError

DEFAULT_TRANSCRIPT_LIMIT = 50


class ConfigError(SealedlogError):
    """Raised when MessengerOptions configuration is invalid."""

    pass


def get_data_dir() -> Path:
    """Default directory for the local log and keystore."""
    data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(data_home) / "sealedlog"


@dataclass
class MessengerOptions:
    """Configuration options for the Messenger client.

    Supports three modes (mutually exclusive):
    1. Local: SQLite files (``log.db``, ``keys.db``) in a data directory
    2. Remote: HTTP log server; keys stay in a local keystore file
    3. In-memory: Ephemeral log and keystore for testing

    Environment Variables:
        SEALEDLOG_PATH: Force local mode with a specific data directory
        SEALEDLOG_URL: Force remote mode with a specific log server URL
        SEALEDLOG_TRANSCRIPT_LIMIT: Default number of messages per read

    Examples:
        # Default data directory
        options = MessengerOptions()

        # Explicit local
        options = MessengerOptions(path="~/chats")

        # Remote
        options = MessengerOptions(url="https://log.example.com")

        # In-memory for tests
        options = MessengerOptions(in_memory=True)
    """

    # Log options
    path: str | Path | None = None
    """Local data directory. Implies local mode."""

    in_memory: bool = False
    """Use an ephemeral in-memory log and keystore."""

    url: str | None = None
    """Remote log server URL."""

    keys_path: str | Path | None = None
    """Keystore file. Defaults to ``keys.db`` in the data directory."""

    # Behavior options
    transcript_limit: int = DEFAULT_TRANSCRIPT_LIMIT
    """Number of most recent messages returned by a read."""

    poll_interval: float = 3.0
    """Seconds between transcript polls."""

    publish_timeout: float = 30.0
    """Seconds to wait for a publish to be confirmed."""

    clear_retries: int = 2
    """Extra attempts per record when clearing a chat."""

    # Internal: resolved values after environment processing
    _resolved_path: Path | None = field(default=None, repr=False)
    _resolved_url: str | None = field(default=None, repr=False)
    _backend_type: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate options and apply environment variable overrides."""
        self._apply_env_overrides()
        self._validate()
        self._resolve_backend()

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables only apply when no explicit backend is specified.
        Explicit options (path, in_memory, url) take priority. The transcript
        limit override applies only while the limit is at its default.
        """
        env_limit = os.environ.get("SEALEDLOG_TRANSCRIPT_LIMIT")
        if env_limit and self.transcript_limit == DEFAULT_TRANSCRIPT_LIMIT:
            try:
                self.transcript_limit = int(env_limit)
            except ValueError as e:
                raise ConfigError(
                    f"SEALEDLOG_TRANSCRIPT_LIMIT must be an integer, got {env_limit!r}"
                ) from e

        has_explicit = self.path is not None or self.in_memory or self.url is not None
        if has_explicit:
            return

        env_path = os.environ.get("SEALEDLOG_PATH")
        if env_path:
            self.path = env_path

        env_url = os.environ.get("SEALEDLOG_URL")
        if env_url:
            self.url = env_url

    def _validate(self) -> None:
        """Validate that options are consistent."""
        local_count = sum([self.path is not None, self.in_memory])
        remote_count = sum([self.url is not None])

        if local_count > 0 and remote_count > 0:
            raise ConfigError(
                "Cannot mix local options (path, in_memory) with remote options (url). "
                "Choose one backend type."
            )

        if self.in_memory and self.path is not None:
            raise ConfigError("in_memory cannot be combined with path.")

        if self.in_memory and self.keys_path is not None:
            raise ConfigError("in_memory cannot be combined with keys_path.")

        if self.transcript_limit < 0:
            raise ConfigError(f"transcript_limit must be >= 0, got {self.transcript_limit}")

        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be > 0, got {self.poll_interval}")

        if self.publish_timeout <= 0:
            raise ConfigError(f"publish_timeout must be > 0, got {self.publish_timeout}")

        if self.clear_retries < 0:
            raise ConfigError(f"clear_retries must be >= 0, got {self.clear_retries}")

    def _resolve_backend(self) -> None:
        """Determine the backend type and resolve paths/URLs."""
        if self.in_memory:
            self._backend_type = "in_memory"
            return

        if self.url is not None:
            self._backend_type = "remote"
            self._resolved_url = self.url.rstrip("/")
            return

        self._backend_type = "local"
        if self.path is not None:
            self._resolved_path = Path(self.path).expanduser().resolve()
        else:
            self._resolved_path = get_data_dir()

    @property
    def backend_type(self) -> str | None:
        """The resolved backend type: 'local', 'remote' or 'in_memory'."""
        return self._backend_type

    @property
    def resolved_path(self) -> Path | None:
        """The resolved data directory (for local backends)."""
        return self._resolved_path

    @property
    def resolved_url(self) -> str | None:
        """The resolved server URL (for remote backends)."""
        return self._resolved_url

    @property
    def resolved_keys_path(self) -> Path | None:
        """The keystore file, or None for an in-memory keystore."""
        if self.in_memory:
            return None
        if self.keys_path is not None:
            return Path(self.keys_path).expanduser().resolve()
        return (self._resolved_path or get_data_dir()) / "keys.db"

    def is_local(self) -> bool:
        """True if configured for local backend."""
        return self._backend_type == "local"

    def is_remote(self) -> bool:
        """True if configured for remote backend."""
        return self._backend_type == "remote"

    def is_in_memory(self) -> bool:
        """True if configured for in-memory backend."""
        return self._backend_type == "in_memory"

    @classmethod
    def for_local(cls, path: str | Path | None = None, **kwargs: Any) -> "MessengerOptions":
        """Create options for a local data directory (default if None)."""
        return cls(path=path if path is not None else get_data_dir(), **kwargs)

    @classmethod
    def for_remote(cls, url: str, **kwargs: Any) -> "MessengerOptions":
        """Create options for a remote log server."""
        return cls(url=url, **kwargs)

    @classmethod
    def for_in_memory(cls, **kwargs: Any) -> "MessengerOptions":
        """Create options for in-memory log and keystore (testing)."""
        return cls(in_memory=True, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        keys_path = self.resolved_keys_path
        return {
            "backend_type": self._backend_type,
            "path": str(self._resolved_path) if self._resolved_path else None,
            "url": self._resolved_url,
            "keys_path": str(keys_path) if keys_path else None,
            "in_memory": self.in_memory,
            "transcript_limit": self.transcript_limit,
            "poll_interval": self.poll_interval,
            "publish_timeout": self.publish_timeout,
            "clear_retries": self.clear_retries,
        }
