"""Error taxonomy shared by every courier component.

Components raise these; transports translate them:
    - HTTP: api.py turns ``status_code`` and ``code`` into a JSON response
    - WebSocket: api.py sends an ``error`` frame carrying ``code``

Duplicate-creation conflicts are never raised; the existing entity is
returned instead. Permanently invalid push endpoints are pruned silently
inside push.py and never surface here.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base class for errors surfaced on the submit / join / mark-read paths."""

    code = "ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ").capitalize()

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message}


class NotFound(CourierError):
    """Referenced entity is absent (or inactive where activity is required)."""

    code = "NOT_FOUND"
    status_code = 404


class AccessDenied(CourierError):
    """Authorization failure. The message never says which check failed."""

    code = "ACCESS_DENIED"
    status_code = 403

    @classmethod
    def default_message(cls) -> str:
        return "Access denied"


class ValidationFailed(CourierError):
    """Malformed or missing input. Terminal, never retried."""

    code = "VALIDATION_FAILED"
    status_code = 400


class TransientError(CourierError):
    """Storage, verifier or gateway unavailable. Safe for the caller to retry."""

    code = "INTERNAL"
    status_code = 503

    @classmethod
    def default_message(cls) -> str:
        return "Service temporarily unavailable"


class AuthenticationFailed(CourierError):
    """A connection or request could not be authenticated.

    ``reason`` is one of no_credential, invalid_credential, identity_not_found.
    """

    code = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Authentication failed: {reason}")

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message, "reason": self.reason}
