"""Unit tests for the exception hierarchy."""

import pytest

from migrationstate.exceptions import (
    ConflictError,
    DiscoveryInProgressError,
    InvalidEntityError,
    MigrationStateError,
    NotFoundError,
    SourceInUseError,
    StorageError,
    UnsupportedEngineError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "error",
        [
            NotFoundError("batch", 1),
            DiscoveryInProgressError(3, "acme"),
            SourceInUseError(2, 5),
            InvalidEntityError("source", []),
            UnsupportedEngineError("mysql"),
            StorageError("migrate"),
        ],
    )
    def test_all_derive_from_base(self, error: Exception):
        """Callers can catch every library error with one except clause."""
        assert isinstance(error, MigrationStateError)

    def test_conflicts(self):
        """Precondition failures share ConflictError."""
        assert isinstance(DiscoveryInProgressError(3, "acme"), ConflictError)
        assert isinstance(SourceInUseError(2, 5), ConflictError)


class TestMessages:
    def test_not_found(self):
        error = NotFoundError("repository", "acme/api")
        assert error.entity == "repository"
        assert error.key == "acme/api"
        assert str(error) == "repository not found: acme/api"

    def test_discovery_in_progress(self):
        error = DiscoveryInProgressError(7, "acme-enterprise")
        assert error.progress_id == 7
        assert error.target == "acme-enterprise"
        assert "id=7" in str(error)

    def test_source_in_use(self):
        error = SourceInUseError(2, 12)
        assert error.repository_count == 12
        assert str(error) == "cannot delete source: 12 repositories are associated with it"

    def test_invalid_entity_joins_messages(self):
        error = InvalidEntityError("source", [{"msg": "name is required"}, {"msg": "bad type"}])
        assert str(error) == "invalid source: name is required; bad type"

    def test_invalid_entity_without_details(self):
        assert str(InvalidEntityError("source", [])) == "invalid source: invalid"

    def test_storage_error_key(self):
        assert str(StorageError("batch_store.get_batch", 4)) == (
            "batch_store.get_batch failed (key=4)"
        )
        assert str(StorageError("migrate")) == "migrate failed"
