"""Room-based realtime relay: sessions, presence, rooms and event dispatch."""

from .errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    NotFoundFailure,
    PersistenceFailure,
    RelayError,
    ValidationFailure,
)
from .managers import (
    configure_realtime,
    get_relay,
    get_services,
    is_configured,
    shutdown_realtime,
    startup_realtime,
)

__all__ = [
    "AuthenticationFailure",
    "AuthorizationFailure",
    "NotFoundFailure",
    "PersistenceFailure",
    "RelayError",
    "ValidationFailure",
    "configure_realtime",
    "get_relay",
    "get_services",
    "is_configured",
    "shutdown_realtime",
    "startup_realtime",
]
