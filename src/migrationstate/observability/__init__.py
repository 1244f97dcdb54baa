"""
Observability utilities for migrationstate.

Provides the composition-based Tracer used by every store and the
standard span attribute names.

Note:
    OpenTelemetry is optional at runtime. Without it, create_tracer()
    returns a NullTracer and spans cost nothing.
"""

from migrationstate.observability.attributes import (
    ATTR_BATCH_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_ROWS_AFFECTED,
    ATTR_DB_SYSTEM,
    ATTR_DISCOVERY_ID,
    ATTR_ITEM_COUNT,
    ATTR_ORGANIZATION,
    ATTR_REPOSITORY_FULL_NAME,
    ATTR_REPOSITORY_ID,
    ATTR_SOURCE_ID,
    ATTR_TEAM_SLUG,
    ATTR_USER_LOGIN,
)
from migrationstate.observability.tracer import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_BATCH_ID",
    "ATTR_DB_OPERATION",
    "ATTR_DB_ROWS_AFFECTED",
    "ATTR_DB_SYSTEM",
    "ATTR_DISCOVERY_ID",
    "ATTR_ITEM_COUNT",
    "ATTR_ORGANIZATION",
    "ATTR_REPOSITORY_FULL_NAME",
    "ATTR_REPOSITORY_ID",
    "ATTR_SOURCE_ID",
    "ATTR_TEAM_SLUG",
    "ATTR_USER_LOGIN",
]
