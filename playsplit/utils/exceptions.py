"""
Error taxonomy for PlaySplit.

Every failure raised by the services carries a stable classification
(``name``), an HTTP status code and a human-readable message. The FastAPI
exception handlers in ``playsplit.api.main`` render these into the standard
``{"success": false, "message": ..., "error": {...}}`` envelope.
"""

from typing import Optional


class PlaySplitError(Exception):
    """Base class for all classified application errors."""

    status_code = 500
    name = "PlaySplitError"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        error = {"name": self.name}
        if self.code:
            error["code"] = self.code
        return error


class ValidationError(PlaySplitError):
    """Malformed or missing input. The caller must fix the request."""

    status_code = 400
    name = "ValidationError"


class AuthenticationError(PlaySplitError):
    """Missing, expired or invalid credential."""

    status_code = 401
    name = "AuthenticationError"


class AuthorizationError(PlaySplitError):
    """Authenticated but not permitted (not organizer or admin)."""

    status_code = 403
    name = "AuthorizationError"


class NotFoundError(PlaySplitError):
    """Requested resource does not exist."""

    status_code = 404
    name = "NotFoundError"


class BusinessRuleError(PlaySplitError):
    """
    A state-machine or roster precondition was violated.

    ``code`` identifies the broken rule, e.g. ``match_not_open``, ``match_full``,
    ``already_joined``, ``player_not_found`` or ``invalid_transition``.
    """

    status_code = 400
    name = "BusinessRuleError"


class PaymentError(PlaySplitError):
    """The payment gateway rejected the request or reported a failure."""

    status_code = 402
    name = "PaymentError"


class DuplicateError(PlaySplitError):
    """Uniqueness violation, e.g. a duplicate external payment reference."""

    status_code = 409
    name = "DuplicateError"


class InfrastructureError(PlaySplitError):
    """Persistence or network failure. Safe to retry the whole operation."""

    status_code = 503
    name = "InfrastructureError"


class ConcurrencyConflictError(InfrastructureError):
    """The match kept changing underneath us and retries were exhausted."""

    status_code = 409
    name = "ConcurrencyConflictError"
