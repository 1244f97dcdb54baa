"""
SQL dialect resolution for the supported relational engines.

Every query that needs engine-specific SQL (boolean literals, date
arithmetic, string position functions, percentiles, row-id returning,
pagination) asks a Dialect for the fragment instead of embedding it.
The dialect is chosen once, from configuration, when the database
handle is built.

Supported engines:
    - sqlite: via aiosqlite
    - postgresql: via asyncpg (identifiers "postgres" and "postgresql")
    - sqlserver: via aioodbc (identifiers "sqlserver" and "mssql")

Example:
    >>> from migrationstate.dialects import get_dialect
    >>> dialect = get_dialect("postgres")
    >>> dialect.date_interval_ago(30)
    "NOW() - INTERVAL '30 days'"
    >>> dialect.extract_org_from_full_name("full_name")
    "SUBSTRING(full_name, 1, POSITION('/' IN full_name) - 1)"
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Literal

from migrationstate.exceptions import UnsupportedEngineError

EngineName = Literal["sqlite", "postgresql", "sqlserver"]

_ENGINE_ALIASES: dict[str, EngineName] = {
    "sqlite": "sqlite",
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "sqlserver": "sqlserver",
    "mssql": "sqlserver",
}


def normalize_engine(engine: str) -> EngineName:
    """
    Map a configured engine identifier onto its canonical name.

    Args:
        engine: Identifier from configuration (case-insensitive)

    Returns:
        Canonical engine name

    Raises:
        UnsupportedEngineError: If the identifier is not recognised
    """
    key = (engine or "").strip().lower()
    try:
        return _ENGINE_ALIASES[key]
    except KeyError:
        raise UnsupportedEngineError(engine) from None


class Dialect(ABC):
    """
    Engine-specific SQL fragment generator.

    Implementations are stateless and safe to share between every store.
    """

    name: EngineName
    driver_scheme: str
    default_max_open_conns: int
    default_max_idle_conns: int

    @property
    @abstractmethod
    def true_literal(self) -> str:
        """Boolean true as it must appear inline in SQL."""

    @property
    @abstractmethod
    def false_literal(self) -> str:
        """Boolean false as it must appear inline in SQL."""

    @abstractmethod
    def extract_org_from_full_name(self, column: str) -> str:
        """Expression returning the part of ``column`` before the first '/'."""

    @abstractmethod
    def find_char_position(self, column: str, char: str) -> str:
        """Expression returning the 1-based position of ``char`` in ``column``."""

    @abstractmethod
    def date_interval_ago(self, days: int) -> str:
        """Expression for the instant ``days`` days before now (UTC)."""

    @abstractmethod
    def date_interval_ago_param(self, param: str = "days") -> str:
        """Like date_interval_ago, with the day count bound as ``:param``."""

    @abstractmethod
    def median(self, column: str) -> str:
        """
        Median aggregate over ``column``.

        Returns an empty string when the engine has no percentile
        support; callers must then compute the median by ordering.
        """

    @property
    def supports_percentile(self) -> bool:
        return self.median("x") != ""

    def bind_datetime(self, value: datetime | None) -> Any:
        """Convert a timezone-aware datetime into the driver's bind value."""
        return value

    def insert_returning_id(self, table: str, columns: Sequence[str]) -> str:
        """Build an INSERT with named binds that returns the new row id."""
        column_list = ", ".join(columns)
        values = ", ".join(f":{column}" for column in columns)
        return f"INSERT INTO {table} ({column_list}) VALUES ({values}) RETURNING id"

    def lock_table_for_writers(self, table: str) -> str:
        """
        Statement that serialises writers on ``table`` until the transaction ends.

        Readers are not blocked. Empty when the engine already allows a
        single writer at a time, as SQLite does.
        """
        return ""

    def paginate(self, limit: int | None, offset: int = 0) -> str:
        """
        Pagination clause to append after ORDER BY.

        Limit and offset are validated integers, so they are inlined.
        """
        if limit is None and not offset:
            return ""
        clause = f"LIMIT {int(limit) if limit is not None else -1}"
        if offset:
            clause += f" OFFSET {int(offset)}"
        return clause

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SQLiteDialect(Dialect):
    """SQLite: INSTR-based string functions, datetime() modifiers, no percentiles."""

    name: EngineName = "sqlite"
    driver_scheme = "sqlite+aiosqlite"
    default_max_open_conns = 1
    default_max_idle_conns = 1

    @property
    def true_literal(self) -> str:
        return "1"

    @property
    def false_literal(self) -> str:
        return "0"

    def extract_org_from_full_name(self, column: str) -> str:
        return f"SUBSTR({column}, 1, INSTR({column}, '/') - 1)"

    def find_char_position(self, column: str, char: str) -> str:
        return f"INSTR({column}, '{char}')"

    def date_interval_ago(self, days: int) -> str:
        return f"datetime('now', '-{int(days)} days')"

    def date_interval_ago_param(self, param: str = "days") -> str:
        return f"datetime('now', '-' || :{param} || ' days')"

    def median(self, column: str) -> str:
        return ""

    def bind_datetime(self, value: datetime | None) -> Any:
        # Stored as text in the same layout as datetime('now') so that
        # string comparison orders correctly.
        if value is None:
            return None
        return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S.%f")


class PostgresDialect(Dialect):
    """PostgreSQL: native booleans, interval arithmetic, ordered-set aggregates."""

    name: EngineName = "postgresql"
    driver_scheme = "postgresql+asyncpg"
    default_max_open_conns = 25
    default_max_idle_conns = 5

    @property
    def true_literal(self) -> str:
        return "TRUE"

    @property
    def false_literal(self) -> str:
        return "FALSE"

    def extract_org_from_full_name(self, column: str) -> str:
        return f"SUBSTRING({column}, 1, POSITION('/' IN {column}) - 1)"

    def find_char_position(self, column: str, char: str) -> str:
        return f"POSITION('{char}' IN {column})"

    def date_interval_ago(self, days: int) -> str:
        return f"NOW() - INTERVAL '{int(days)} days'"

    def date_interval_ago_param(self, param: str = "days") -> str:
        return f"NOW() - INTERVAL '1 day' * :{param}"

    def median(self, column: str) -> str:
        return f"PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY {column})"

    def lock_table_for_writers(self, table: str) -> str:
        return f"LOCK TABLE {table} IN SHARE ROW EXCLUSIVE MODE"


class SQLServerDialect(Dialect):
    """SQL Server: BIT booleans, CHARINDEX, DATEADD, OUTPUT INSERTED, OFFSET/FETCH."""

    name: EngineName = "sqlserver"
    driver_scheme = "mssql+aioodbc"
    default_max_open_conns = 25
    default_max_idle_conns = 5

    @property
    def true_literal(self) -> str:
        return "1"

    @property
    def false_literal(self) -> str:
        return "0"

    def extract_org_from_full_name(self, column: str) -> str:
        return f"SUBSTRING({column}, 1, CHARINDEX('/', {column}) - 1)"

    def find_char_position(self, column: str, char: str) -> str:
        return f"CHARINDEX('{char}', {column})"

    def date_interval_ago(self, days: int) -> str:
        return f"DATEADD(day, -{int(days)}, GETUTCDATE())"

    def date_interval_ago_param(self, param: str = "days") -> str:
        return f"DATEADD(day, -:{param}, GETUTCDATE())"

    def median(self, column: str) -> str:
        # Window form: one row per input row, callers select DISTINCT or TOP 1
        return f"PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY {column}) OVER ()"

    def bind_datetime(self, value: datetime | None) -> Any:
        # DATETIME2 columns hold naive UTC
        if value is None:
            return None
        return value.astimezone(UTC).replace(tzinfo=None)

    def insert_returning_id(self, table: str, columns: Sequence[str]) -> str:
        column_list = ", ".join(columns)
        values = ", ".join(f":{column}" for column in columns)
        return f"INSERT INTO {table} ({column_list}) OUTPUT INSERTED.id VALUES ({values})"

    def lock_table_for_writers(self, table: str) -> str:
        # Table-level update lock: conflicts with itself, not with shared locks
        return f"SELECT COUNT(*) FROM {table} WITH (UPDLOCK, HOLDLOCK, TABLOCK)"

    def paginate(self, limit: int | None, offset: int = 0) -> str:
        if limit is None and not offset:
            return ""
        clause = f"OFFSET {int(offset)} ROWS"
        if limit is not None:
            clause += f" FETCH NEXT {int(limit)} ROWS ONLY"
        return clause


_DIALECTS: dict[EngineName, type[Dialect]] = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgresDialect,
    "sqlserver": SQLServerDialect,
}


def get_dialect(engine: str) -> Dialect:
    """
    Resolve the dialect for an engine identifier.

    Args:
        engine: "sqlite", "postgres"/"postgresql" or "sqlserver"/"mssql"

    Returns:
        Dialect instance for the engine

    Raises:
        UnsupportedEngineError: If the identifier is not recognised
    """
    return _DIALECTS[normalize_engine(engine)]()


__all__ = [
    "Dialect",
    "EngineName",
    "PostgresDialect",
    "SQLServerDialect",
    "SQLiteDialect",
    "get_dialect",
    "normalize_engine",
]
