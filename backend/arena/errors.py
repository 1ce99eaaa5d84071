"""
Typed errors raised by the match engine services.

Services raise these; routes translate them into HTTP responses. Each kind has a
stable ``code`` so clients can branch on it without parsing messages.
"""

from fastapi import HTTPException


class MatchEngineError(Exception):
    """Base class for business-rule violations"""

    code = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return self.code.replace("_", " ").capitalize()


class NotFound(MatchEngineError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidState(MatchEngineError):
    """Operation not valid for the match's current lifecycle state"""

    code = "INVALID_STATE"
    status_code = 409


class NotParticipant(MatchEngineError):
    code = "NOT_PARTICIPANT"
    status_code = 403


class NotAuthorized(MatchEngineError):
    """Caller is a participant but lacks standing (e.g. reporter confirming own report)"""

    code = "NOT_AUTHORIZED"
    status_code = 403


class InvalidScore(MatchEngineError):
    code = "INVALID_SCORE"
    status_code = 422


class InvalidReason(MatchEngineError):
    code = "INVALID_REASON"
    status_code = 422


class InvalidWinner(MatchEngineError):
    code = "INVALID_WINNER"
    status_code = 422


class AlreadyResolved(MatchEngineError):
    code = "ALREADY_RESOLVED"
    status_code = 409


class ConcurrencyConflict(MatchEngineError):
    """Lock or version contention. Retried internally before it ever reaches a client."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409

    def default_message(self) -> str:
        return "Please refresh and try again"


def http_error(e: MatchEngineError) -> HTTPException:
    """HTTPException for a route to raise, detail formatted as "CODE: message"."""
    return HTTPException(status_code=e.status_code, detail=f"{e.code}: {e}")
