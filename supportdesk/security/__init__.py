"""Authorization helpers exposed for convenience."""

from .access import (
    AGENT_ROLES,
    Access,
    AccessResolver,
    Capabilities,
    InMemoryAccessResolver,
    SqlAccessResolver,
    authorize,
)

__all__ = [
    "AGENT_ROLES",
    "Access",
    "AccessResolver",
    "Capabilities",
    "InMemoryAccessResolver",
    "SqlAccessResolver",
    "authorize",
]
