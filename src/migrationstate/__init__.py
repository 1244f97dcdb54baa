"""
migrationstate - Persistent state for repository migrations.

This library provides:
- A Database handle over SQLite, PostgreSQL and SQL Server
- Entity stores for repositories, batches, dependencies, sources,
  discovery runs, teams, users, identity mappings and mannequins
- Batch readiness derivation and team sync-status reconciliation
- Cascading source deletion with an exact preview
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("migration-state")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from migrationstate.cascade import SourceCascade
from migrationstate.config import DatabaseConfig
from migrationstate.database import Database, create_engine
from migrationstate.dialects import (
    Dialect,
    PostgresDialect,
    SQLiteDialect,
    SQLServerDialect,
    get_dialect,
    normalize_engine,
)
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
from migrationstate.models import (
    SOURCE_TYPE_AZURE_DEVOPS,
    SOURCE_TYPE_GITHUB,
    Batch,
    BatchStatus,
    DependencyPair,
    DiscoveryPhase,
    DiscoveryProgress,
    DiscoveryStatus,
    MappingStats,
    MappingStatus,
    MappingWithMannequin,
    MigrationHistory,
    MigrationLog,
    OrgCompletionStats,
    Repository,
    RepositoryDependency,
    RepositoryStatus,
    Source,
    SourceDeletionPreview,
    Team,
    TeamDetail,
    TeamMapping,
    TeamMember,
    TeamMigrationStatus,
    TeamRepositoryStatus,
    TeamSyncStatus,
    TeamWithMapping,
    User,
    UserMannequin,
    UserMapping,
    UserOrgCompleteness,
    UserOrgMembership,
    UserStats,
)
from migrationstate.readiness import calculate_batch_readiness, next_batch_status
from migrationstate.reconciler import MappingReconciler, calculate_sync_status

__all__ = [
    "__version__",
    # Handle and configuration
    "Database",
    "DatabaseConfig",
    "create_engine",
    # Dialects
    "Dialect",
    "PostgresDialect",
    "SQLiteDialect",
    "SQLServerDialect",
    "get_dialect",
    "normalize_engine",
    # Exceptions
    "ConflictError",
    "DiscoveryInProgressError",
    "InvalidEntityError",
    "MigrationStateError",
    "NotFoundError",
    "SourceInUseError",
    "StorageError",
    "UnsupportedEngineError",
    # Models
    "SOURCE_TYPE_AZURE_DEVOPS",
    "SOURCE_TYPE_GITHUB",
    "Batch",
    "BatchStatus",
    "DependencyPair",
    "DiscoveryPhase",
    "DiscoveryProgress",
    "DiscoveryStatus",
    "MappingStats",
    "MappingStatus",
    "MappingWithMannequin",
    "MigrationHistory",
    "MigrationLog",
    "OrgCompletionStats",
    "Repository",
    "RepositoryDependency",
    "RepositoryStatus",
    "Source",
    "SourceDeletionPreview",
    "Team",
    "TeamDetail",
    "TeamMapping",
    "TeamMember",
    "TeamMigrationStatus",
    "TeamRepositoryStatus",
    "TeamSyncStatus",
    "TeamWithMapping",
    "User",
    "UserMannequin",
    "UserMapping",
    "UserOrgCompleteness",
    "UserOrgMembership",
    "UserStats",
    # Derivation
    "MappingReconciler",
    "SourceCascade",
    "calculate_batch_readiness",
    "calculate_sync_status",
    "next_batch_status",
]
