"""
Data models for migration state tracking.

Enums:
    - RepositoryStatus: Repository migration lifecycle
    - BatchStatus: Batch lifecycle (derived while pending/ready, frozen after)
    - DiscoveryStatus / DiscoveryPhase: Discovery run state
    - MappingStatus: Source-to-destination identity mapping state
    - TeamMigrationStatus: Team migration execution state
    - TeamSyncStatus: Derived team repository-permission sync state

Entities:
    - Source, Repository, Batch, RepositoryDependency, DiscoveryProgress
    - Team, TeamMember, User, UserOrgMembership
    - UserMapping, TeamMapping, UserMannequin
    - MigrationHistory, MigrationLog

Read models (frozen):
    - DependencyPair, SourceDeletionPreview, OrgCompletionStats,
      MappingWithMannequin, TeamRepositoryStatus, TeamDetail,
      TeamWithMapping, UserOrgCompleteness, MappingStats, UserStats
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class RepositoryStatus(Enum):
    """
    Repository migration lifecycle.

    Statuses advance monotonically within one migration attempt. After a
    failure or rollback a repository may be reset to a retry state.
    """

    PENDING = "pending"
    DRY_RUN_QUEUED = "dry_run_queued"
    DRY_RUN_IN_PROGRESS = "dry_run_in_progress"
    DRY_RUN_COMPLETE = "dry_run_complete"
    DRY_RUN_FAILED = "dry_run_failed"
    PRE_MIGRATION = "pre_migration"
    ARCHIVE_GENERATING = "archive_generating"
    QUEUED_FOR_MIGRATION = "queued_for_migration"
    MIGRATING_CONTENT = "migrating_content"
    MIGRATION_COMPLETE = "migration_complete"
    MIGRATION_FAILED = "migration_failed"
    POST_MIGRATION = "post_migration"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"
    WONT_MIGRATE = "wont_migrate"

    @property
    def is_failed(self) -> bool:
        return self in (
            RepositoryStatus.DRY_RUN_FAILED,
            RepositoryStatus.MIGRATION_FAILED,
            RepositoryStatus.ROLLED_BACK,
        )


class BatchStatus(Enum):
    """
    Batch lifecycle phases.

    PENDING and READY are derived from member repository statuses and
    recomputed on every membership change. Every other status belongs
    to execution and is never overwritten by recomputation.
    """

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_frozen(self) -> bool:
        """
        Check if readiness recomputation must leave this status alone.

        Returns:
            True for execution and terminal statuses.
        """
        return self not in (BatchStatus.PENDING, BatchStatus.READY)


class DiscoveryStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not DiscoveryStatus.IN_PROGRESS


class DiscoveryPhase(Enum):
    """Step a discovery run is currently working on."""

    LISTING_REPOS = "listing_repos"
    PROFILING_REPOS = "profiling_repos"
    DISCOVERING_TEAMS = "discovering_teams"
    DISCOVERING_USERS = "discovering_users"
    WAITING_FOR_RATE_LIMIT = "waiting_for_rate_limit"
    COMPLETED = "completed"
    CANCELLING = "cancelling"


class MappingStatus(Enum):
    UNMAPPED = "unmapped"
    MAPPED = "mapped"
    SKIPPED = "skipped"
    RECLAIMED = "reclaimed"


class TeamMigrationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TeamSyncStatus(Enum):
    """
    Team repository-permission sync state, derived at read time.

    See migrationstate.reconciler.calculate_sync_status for the rules.
    """

    PENDING = "pending"
    FAILED = "failed"
    TEAM_ONLY = "team_only"
    NEEDS_SYNC = "needs_sync"
    PARTIAL = "partial"
    COMPLETE = "complete"


SOURCE_TYPE_GITHUB = "github"
SOURCE_TYPE_AZURE_DEVOPS = "azuredevops"


class Source(BaseModel):
    """
    An origin system: one GitHub instance/organization or one Azure
    DevOps organization.

    Validation trims and normalises fields the same way on construction
    and when a store re-validates before writing. A source that fails
    validation never reaches the database.

    Attributes:
        name: Unique display name, at most 100 characters
        type: "github" or "azuredevops"
        base_url: API base URL without trailing slash
        token: Access token
        organization: Required for Azure DevOps
        enterprise_slug: Optional GitHub enterprise slug
    """

    model_config = ConfigDict(
        from_attributes=True,
        # Mutable so callers can edit and re-save
    )

    id: int | None = None
    name: str
    type: str
    base_url: str
    token: str
    organization: str | None = None
    enterprise_slug: str | None = None
    app_id: int | None = None
    app_private_key: str | None = None
    app_installation_id: int | None = None
    is_active: bool = True
    repository_count: int = 0
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source name is required")
        if len(value) > 100:
            raise ValueError("source name must be 100 characters or less")
        return value

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("source type is required")
        if value not in (SOURCE_TYPE_GITHUB, SOURCE_TYPE_AZURE_DEVOPS):
            raise ValueError("source type must be 'github' or 'azuredevops'")
        return value

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source base URL is required")
        return value.removesuffix("/")

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("source token is required")
        return value

    @model_validator(mode="after")
    def _check_organization(self) -> Source:
        if self.type == SOURCE_TYPE_AZURE_DEVOPS:
            org = (self.organization or "").strip()
            if not org:
                raise ValueError("organization is required for Azure DevOps sources")
            self.organization = org
        elif self.type == SOURCE_TYPE_GITHUB:
            if self.enterprise_slug is not None:
                self.enterprise_slug = self.enterprise_slug.strip() or None
            if self.organization is not None:
                self.organization = self.organization.strip() or None
        return self

    @property
    def is_github(self) -> bool:
        return self.type == SOURCE_TYPE_GITHUB

    @property
    def is_azure_devops(self) -> bool:
        return self.type == SOURCE_TYPE_AZURE_DEVOPS

    @property
    def has_app_auth(self) -> bool:
        return bool(self.app_id and self.app_id > 0 and self.app_private_key)

    @property
    def masked_token(self) -> str:
        if len(self.token) <= 8:
            return "****"
        return f"{self.token[:4]}...{self.token[-4:]}"


@dataclass
class Repository:
    """
    A repository tracked through migration.

    ``full_name`` ("org/name") is the natural key; ``id`` and
    ``discovered_at`` are assigned on first save and preserved by
    every later save.
    """

    full_name: str
    source: str = "github"
    source_url: str = ""
    source_id: int | None = None
    status: RepositoryStatus = RepositoryStatus.PENDING
    batch_id: int | None = None
    priority: int = 0
    visibility: str | None = None
    is_archived: bool = False
    is_fork: bool = False
    destination_url: str | None = None
    destination_full_name: str | None = None
    is_source_locked: bool = False
    id: int | None = None
    discovered_at: datetime | None = None
    updated_at: datetime | None = None
    migrated_at: datetime | None = None
    last_discovery_at: datetime | None = None
    last_dry_run_at: datetime | None = None

    @property
    def organization(self) -> str:
        return self.full_name.split("/", 1)[0]


@dataclass
class Batch:
    name: str
    type: str = ""
    description: str | None = None
    status: BatchStatus = BatchStatus.PENDING
    destination_org: str | None = None
    migration_api: str = "GEI"
    repository_count: int = 0
    id: int | None = None
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_dry_run_at: datetime | None = None
    last_migration_attempt_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class MigrationHistory:
    repository_id: int
    status: str
    phase: str
    message: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    id: int | None = None


@dataclass
class MigrationLog:
    repository_id: int
    level: str
    phase: str
    operation: str
    message: str
    history_id: int | None = None
    details: str | None = None
    initiated_by: str | None = None
    timestamp: datetime | None = None
    id: int | None = None


@dataclass
class RepositoryDependency:
    """
    Directed edge from a repository to something it depends on.

    ``is_local`` is derived: true exactly when ``dependency_full_name``
    names a repository present in the store. It is refreshed in bulk by
    DependencyStore.recompute_locality_flags().
    """

    dependency_full_name: str
    dependency_type: str
    dependency_url: str = ""
    repository_id: int | None = None
    is_local: bool = False
    metadata: dict[str, Any] | None = None
    id: int | None = None
    discovered_at: datetime | None = None


@dataclass(frozen=True)
class DependencyPair:
    """A dependency edge whose both endpoints are known repositories."""

    source_repo: str
    target_repo: str
    dependency_type: str
    dependency_url: str
    source_repo_url: str | None = None
    target_repo_url: str | None = None


@dataclass
class DiscoveryProgress:
    discovery_type: str
    target: str
    status: DiscoveryStatus = DiscoveryStatus.IN_PROGRESS
    phase: DiscoveryPhase = DiscoveryPhase.LISTING_REPOS
    total_orgs: int = 0
    processed_orgs: int = 0
    current_org: str | None = None
    total_repos: int = 0
    processed_repos: int = 0
    error_count: int = 0
    last_error: str | None = None
    id: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Team:
    organization: str
    slug: str
    name: str
    description: str | None = None
    privacy: str = "closed"
    source_id: int | None = None
    id: int | None = None
    discovered_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TeamMember:
    team_id: int
    login: str
    role: str = "member"
    id: int | None = None
    discovered_at: datetime | None = None


@dataclass
class User:
    """
    A source-side user.

    Contribution counters only ever grow across re-discovery; see
    UserStore.save_user.
    """

    login: str
    source_instance: str = ""
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    source_id: int | None = None
    commit_count: int = 0
    issue_count: int = 0
    pr_count: int = 0
    comment_count: int = 0
    repository_count: int = 0
    id: int | None = None
    discovered_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserOrgMembership:
    user_login: str
    organization: str
    role: str = "member"
    id: int | None = None
    discovered_at: datetime | None = None


@dataclass
class UserMapping:
    source_login: str
    source_email: str | None = None
    source_name: str | None = None
    source_org: str | None = None
    destination_login: str | None = None
    destination_email: str | None = None
    mapping_status: MappingStatus = MappingStatus.UNMAPPED
    mannequin_id: str | None = None
    mannequin_login: str | None = None
    mannequin_org: str | None = None
    reclaim_status: str | None = None
    reclaim_error: str | None = None
    match_confidence: int | None = None
    match_reason: str | None = None
    source_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TeamMapping:
    """
    Source team to destination team mapping.

    ``repos_synced`` and ``team_created_in_dest`` are written by the
    migration executor. ``total_source_repos`` and ``repos_eligible``
    are informational caches; readers use live counts instead.
    """

    source_org: str
    source_team_slug: str
    source_team_name: str | None = None
    destination_org: str | None = None
    destination_team_slug: str | None = None
    destination_team_name: str | None = None
    mapping_status: MappingStatus = MappingStatus.UNMAPPED
    auto_created: bool = False
    migration_status: TeamMigrationStatus = TeamMigrationStatus.PENDING
    migrated_at: datetime | None = None
    error_message: str | None = None
    repos_synced: int = 0
    total_source_repos: int = 0
    repos_eligible: int = 0
    team_created_in_dest: bool = False
    last_synced_at: datetime | None = None
    source_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserMannequin:
    """
    Placeholder identity for a source user in one destination org.

    One source login may own a mannequin in each destination org.
    """

    source_login: str
    mannequin_org: str
    mannequin_id: str
    mannequin_login: str | None = None
    reclaim_status: str | None = None
    reclaim_error: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class MappingWithMannequin:
    source_login: str
    mapping_status: MappingStatus
    mannequin_id: str
    mannequin_org: str
    source_email: str | None = None
    source_name: str | None = None
    destination_login: str | None = None
    destination_email: str | None = None
    match_confidence: int | None = None
    match_reason: str | None = None
    mannequin_login: str | None = None
    reclaim_status: str | None = None
    reclaim_error: str | None = None


@dataclass(frozen=True)
class SourceDeletionPreview:
    """
    Row counts a cascading source delete removes.

    ``batch_repository_count`` reports how many of the source's
    repositories sit in a batch. Batches survive the delete, so it is
    not part of ``total_affected_records``.
    """

    source_id: int
    source_name: str
    repository_count: int = 0
    migration_history_count: int = 0
    migration_log_count: int = 0
    dependency_count: int = 0
    team_repository_count: int = 0
    team_count: int = 0
    team_member_count: int = 0
    user_count: int = 0
    user_mapping_count: int = 0
    team_mapping_count: int = 0
    batch_repository_count: int = 0

    @property
    def total_affected_records(self) -> int:
        return (
            self.repository_count
            + self.migration_history_count
            + self.migration_log_count
            + self.dependency_count
            + self.team_repository_count
            + self.team_count
            + self.team_member_count
            + self.user_count
            + self.user_mapping_count
            + self.team_mapping_count
        )


@dataclass(frozen=True)
class OrgCompletionStats:
    organization: str
    total_repos: int
    completed_count: int
    in_progress_count: int
    pending_count: int
    failed_count: int


@dataclass(frozen=True)
class TeamRepositoryStatus:
    full_name: str
    permission: str
    status: RepositoryStatus | None


@dataclass(frozen=True)
class TeamDetail:
    """
    A team with members, repositories and mapping state.

    ``total_source_repos`` and ``repos_eligible`` are counted from the
    current repository table at read time. ``sync_status`` is None when
    the team has no mapping.
    """

    team: Team
    members: list[TeamMember] = field(default_factory=list)
    repositories: list[TeamRepositoryStatus] = field(default_factory=list)
    mapping: TeamMapping | None = None
    total_source_repos: int = 0
    repos_eligible: int = 0
    repos_synced: int = 0
    team_created_in_dest: bool = False
    sync_status: TeamSyncStatus | None = None

    @property
    def completion_percent(self) -> float:
        if self.repos_eligible == 0:
            return 0.0
        return min(100.0, 100.0 * self.repos_synced / self.repos_eligible)


@dataclass(frozen=True)
class TeamWithMapping:
    team: Team
    mapping: TeamMapping | None
    total_source_repos: int
    repos_eligible: int
    sync_status: TeamSyncStatus | None


@dataclass(frozen=True)
class UserOrgCompleteness:
    """Migration progress for one user in one destination org."""

    source_login: str
    mannequin_org: str
    mannequin_id: str
    mannequin_login: str | None
    reclaim_status: str | None
    repos_reachable: int
    repos_migrated_to_org: int


@dataclass(frozen=True)
class MappingStats:
    total: int = 0
    mapped: int = 0
    unmapped: int = 0
    skipped: int = 0
    reclaimed: int = 0
    invitable: int = 0


@dataclass(frozen=True)
class UserStats:
    total: int = 0
    with_email: int = 0
    with_activity: int = 0
