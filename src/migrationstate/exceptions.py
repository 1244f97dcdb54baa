"""Library exceptions for the migrationstate package."""

from typing import Any


class MigrationStateError(Exception):
    """Base exception for migrationstate library."""

    pass


class NotFoundError(MigrationStateError):
    """Raised when a keyed update or delete matched no rows."""

    def __init__(self, entity: str, key: Any) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ConflictError(MigrationStateError):
    """Raised when an operation violates a precondition on current state."""

    pass


class DiscoveryInProgressError(ConflictError):
    """
    Raised when a discovery run is started while another is still active.

    Attributes:
        progress_id: ID of the active discovery_progress row
        target: Target of the active discovery (organization or enterprise)
    """

    def __init__(self, progress_id: int, target: str) -> None:
        self.progress_id = progress_id
        self.target = target
        super().__init__(
            f"discovery already in progress (id={progress_id}, target={target})"
        )


class SourceInUseError(ConflictError):
    """Raised when deleting a source that repositories still reference."""

    def __init__(self, source_id: int, repository_count: int) -> None:
        self.source_id = source_id
        self.repository_count = repository_count
        super().__init__(
            f"cannot delete source: {repository_count} repositories are associated with it"
        )


class InvalidEntityError(MigrationStateError):
    """
    Raised when an entity fails structural validation before any write.

    Attributes:
        entity: Entity type name (e.g. "source")
        errors: Validation error details, as reported by pydantic
    """

    def __init__(self, entity: str, errors: list[dict[str, Any]]) -> None:
        self.entity = entity
        self.errors = errors
        details = "; ".join(str(err.get("msg", err)) for err in errors) or "invalid"
        super().__init__(f"invalid {entity}: {details}")


class UnsupportedEngineError(MigrationStateError):
    """Raised when a database engine identifier is not recognised."""

    def __init__(self, engine: str) -> None:
        self.engine = engine
        super().__init__(f"unsupported database type: {engine!r}")


class StorageError(MigrationStateError):
    """
    Raised when the database engine or driver fails.

    The original SQLAlchemy exception is chained as ``__cause__``.

    Attributes:
        operation: Name of the store operation that failed
        key: Entity key the operation was working on, if any
    """

    def __init__(self, operation: str, key: Any = None) -> None:
        self.operation = operation
        self.key = key
        key_info = f" (key={key})" if key is not None else ""
        super().__init__(f"{operation} failed{key_info}")


__all__ = [
    "MigrationStateError",
    "NotFoundError",
    "ConflictError",
    "DiscoveryInProgressError",
    "SourceInUseError",
    "InvalidEntityError",
    "UnsupportedEngineError",
    "StorageError",
]
