"""Failure taxonomy shared by the realtime relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for failures scoped to a single connection or event.

    ``reason`` is the coarse machine readable code sent to clients and
    ``detail`` a short human readable message. Neither may carry store
    errors or other internal information.
    """

    reason = "error"
    default_detail = "Request failed"

    def __init__(self, detail: str | None = None, *, event: str | None = None) -> None:
        self.detail = detail or self.default_detail
        self.event = event
        super().__init__(self.detail)


class AuthenticationFailure(RelayError):
    """Credential missing, malformed, expired or bound to an unknown user."""

    reason = "unauthenticated"
    default_detail = "Could not validate credentials"


class AuthorizationFailure(RelayError):
    """Authenticated user may not act on the target conversation."""

    reason = "not_authorized"
    default_detail = "Not authorized for this conversation"


class NotFoundFailure(AuthorizationFailure):
    """Referenced conversation, message or user does not exist.

    Reported exactly like :class:`AuthorizationFailure` so clients cannot
    learn about conversations they do not belong to.
    """

    def __init__(self, detail: str | None = None, *, event: str | None = None) -> None:
        # the specific detail is kept for logs only
        super().__init__(None, event=event)
        self.internal_detail = detail


class PersistenceFailure(RelayError):
    """The backing store is unavailable or rejected a write."""

    reason = "persistence_error"
    default_detail = "Failed to store changes"


class ValidationFailure(RelayError):
    """Inbound payload is not valid JSON or has the wrong shape."""

    reason = "invalid_payload"
    default_detail = "Invalid message format"


__all__ = [
    "RelayError",
    "AuthenticationFailure",
    "AuthorizationFailure",
    "NotFoundFailure",
    "PersistenceFailure",
    "ValidationFailure",
]
