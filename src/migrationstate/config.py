"""
Configuration for the migration state database.

This module provides:
- DatabaseConfig: engine identifier, connection string and pool sizing
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from migrationstate.dialects import Dialect, get_dialect

DEFAULT_CONN_MAX_LIFETIME = timedelta(minutes=5)


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Configuration for a Database handle.

    Pool sizes left as None fall back to the engine's defaults: SQLite
    uses a single connection (one writer), server engines use 25 open
    and 5 idle connections.

    Attributes:
        type: Engine identifier ("sqlite", "postgres"/"postgresql",
            "sqlserver"/"mssql")
        dsn: Connection string. For SQLite a file path, ":memory:" or a
            sqlite+aiosqlite URL. For server engines a URL; the driver
            is added when the scheme does not name one.
        max_open_conns: Upper bound on simultaneously open connections
        max_idle_conns: Connections kept in the pool while idle
        conn_max_lifetime: Connections older than this are recycled
        echo: Log every statement through SQLAlchemy's engine logger

    Example:
        >>> config = DatabaseConfig(type="postgres", dsn="postgresql://app@db/migrator")
        >>> config.pool_limits()
        (25, 5)
    """

    type: str
    dsn: str
    max_open_conns: int | None = None
    max_idle_conns: int | None = None
    conn_max_lifetime: timedelta = DEFAULT_CONN_MAX_LIFETIME
    echo: bool = False

    def __post_init__(self) -> None:
        """Validate configuration values."""
        # Raises UnsupportedEngineError for unknown engines
        get_dialect(self.type)

        if not self.dsn or not self.dsn.strip():
            raise ValueError("dsn must not be empty")

        if self.max_open_conns is not None and self.max_open_conns < 1:
            raise ValueError(f"max_open_conns must be positive, got {self.max_open_conns}")

        if self.max_idle_conns is not None and self.max_idle_conns < 1:
            raise ValueError(f"max_idle_conns must be positive, got {self.max_idle_conns}")

        if self.conn_max_lifetime.total_seconds() <= 0:
            raise ValueError(
                f"conn_max_lifetime must be positive, got {self.conn_max_lifetime}"
            )

        max_open, max_idle = self.pool_limits()
        if max_idle > max_open:
            raise ValueError(
                f"max_idle_conns ({max_idle}) cannot exceed max_open_conns ({max_open})"
            )

    @property
    def dialect(self) -> Dialect:
        return get_dialect(self.type)

    def pool_limits(self) -> tuple[int, int]:
        """
        Resolve (max_open, max_idle) with engine defaults applied.

        An explicit max_open smaller than the default idle count lowers
        the idle count to match.
        """
        dialect = self.dialect
        max_open = self.max_open_conns or dialect.default_max_open_conns
        if self.max_idle_conns is not None:
            max_idle = self.max_idle_conns
        else:
            max_idle = min(dialect.default_max_idle_conns, max_open)
        return max_open, max_idle

    def async_url(self) -> str:
        """
        Build the SQLAlchemy async URL for this configuration.

        Returns:
            URL string naming the async driver for the engine
        """
        dialect = self.dialect
        dsn = self.dsn.strip()

        if "://" in dsn:
            scheme, rest = dsn.split("://", 1)
            if "+" in scheme:
                return dsn
            return f"{dialect.driver_scheme}://{rest}"

        if dialect.name == "sqlite":
            return f"{dialect.driver_scheme}:///{dsn}"

        raise ValueError(f"dsn for {dialect.name} must be a URL, got {dsn!r}")


__all__ = ["DEFAULT_CONN_MAX_LIFETIME", "DatabaseConfig"]
