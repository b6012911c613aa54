"""Database configuration."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_TRUE = frozenset({"1", "true", "yes", "on"})


def _as_bool(value: str | bool | None, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() in _TRUE


@dataclass
class DatabaseConfig:
    """Connection and logging settings for a session.

    Example relkit.ini:
        [relkit]
        url = postgresql://localhost/app
        max_connections = 20
        log_queries = true
    """

    url: str
    """Database connection URL."""

    min_connections: int = 1
    """Minimum size of the connection pool."""

    max_connections: int = 10
    """Maximum size of the connection pool."""

    schema: str | None = None
    """Schema put on the search path of every connection."""

    log_queries: bool = False
    """Log every statement on the ``relkit.query`` logger."""

    command_timeout: float | None = None
    """Per-statement timeout in seconds."""

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("Database URL is required")
        if self.min_connections > self.max_connections:
            raise ValueError(
                f"min_connections ({self.min_connections}) exceeds max_connections ({self.max_connections})"
            )

    @classmethod
    def from_url(cls, url: str, **options: Any) -> DatabaseConfig:
        return cls(url=url, **options)

    @classmethod
    def from_env(cls, prefix: str = "RELKIT_", environ: dict[str, str] | None = None) -> DatabaseConfig:
        """Load configuration from environment variables.

        Reads ``{prefix}DATABASE_URL`` (falling back to ``DATABASE_URL``),
        ``{prefix}MIN_CONNECTIONS``, ``{prefix}MAX_CONNECTIONS``,
        ``{prefix}SCHEMA``, ``{prefix}LOG_QUERIES`` and
        ``{prefix}COMMAND_TIMEOUT``.

        Raises:
            ValueError: If no database URL is set
        """
        env = os.environ if environ is None else environ
        url = env.get(f"{prefix}DATABASE_URL") or env.get("DATABASE_URL")
        if not url:
            raise ValueError(f"{prefix}DATABASE_URL is not set")

        timeout = env.get(f"{prefix}COMMAND_TIMEOUT")
        return cls(
            url=url,
            min_connections=int(env.get(f"{prefix}MIN_CONNECTIONS", "1")),
            max_connections=int(env.get(f"{prefix}MAX_CONNECTIONS", "10")),
            schema=env.get(f"{prefix}SCHEMA") or None,
            log_queries=_as_bool(env.get(f"{prefix}LOG_QUERIES")),
            command_timeout=float(timeout) if timeout else None,
        )

    @classmethod
    def from_ini(cls, path: Path | str, section: str = "relkit") -> DatabaseConfig:
        """Load configuration from an ini file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If the section or the url option is missing
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        parser = configparser.ConfigParser()
        parser.read(path)
        if section not in parser:
            raise ValueError(f"No [{section}] section in {path}")

        values = parser[section]
        url = values.get("url")
        if not url:
            raise ValueError(f"Missing 'url' in [{section}] section of {path}")

        timeout = values.get("command_timeout")
        return cls(
            url=url,
            min_connections=values.getint("min_connections", 1),
            max_connections=values.getint("max_connections", 10),
            schema=values.get("schema") or None,
            log_queries=values.getboolean("log_queries", False),
            command_timeout=float(timeout) if timeout else None,
        )
