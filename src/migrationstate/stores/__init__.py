"""
Entity stores for the migration state database.

Every store takes ``(conn, dialect, tracer=None, enable_tracing=True)``.
Given an AsyncEngine a store opens its own connection per operation;
given an AsyncConnection it joins the caller's transaction.
"""

from migrationstate.stores._base import BaseStore
from migrationstate.stores._connection import execute_with_connection
from migrationstate.stores.batches import BatchStore
from migrationstate.stores.dependencies import DependencyStore
from migrationstate.stores.discovery import DiscoveryStore
from migrationstate.stores.mannequins import MannequinStore
from migrationstate.stores.mappings import TeamMappingStore, UserMappingStore
from migrationstate.stores.repositories import RepositoryStore
from migrationstate.stores.sources import SourceStore, validate_source
from migrationstate.stores.teams import TeamStore
from migrationstate.stores.users import UserStore, merge_user

__all__ = [
    "BaseStore",
    "BatchStore",
    "DependencyStore",
    "DiscoveryStore",
    "MannequinStore",
    "RepositoryStore",
    "SourceStore",
    "TeamMappingStore",
    "TeamStore",
    "UserMappingStore",
    "UserStore",
    "execute_with_connection",
    "merge_user",
    "validate_source",
]
