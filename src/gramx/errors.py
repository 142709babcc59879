from __future__ import annotations


class GramxError(Exception):
    """Base class for errors reported back to the originating connection."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(GramxError):
    code = "invalid_request"


class InvalidState(ValidationError):
    code = "invalid_state"


class AuthError(GramxError):
    code = "auth_failed"


class NotOwner(GramxError):
    code = "not_owner"


class InvalidParticipants(GramxError):
    code = "invalid_participants"


class NotFound(GramxError):
    code = "not_found"


class PersistenceUnavailable(GramxError):
    code = "persistence_unavailable"


class CompletionFailed(GramxError):
    code = "completion_failed"
