"""Errors reported to realtime clients as structured ``error`` events."""

DUEL_NOT_FOUND = 'DUEL_NOT_FOUND'
NOT_IN_DUEL = 'NOT_IN_DUEL'
UNAUTHORIZED = 'UNAUTHORIZED'
INVALID_STATE = 'INVALID_STATE'
INVALID_ANSWER = 'INVALID_ANSWER'
ALREADY_QUEUED = 'ALREADY_QUEUED'
GENERATION_FAILED = 'GENERATION_FAILED'
DUEL_CREATE_FAILED = 'DUEL_CREATE_FAILED'
INTERNAL_ERROR = 'INTERNAL_ERROR'


class DuelError(Exception):
    """Base exception for everything the duel engine reports to a client."""

    default_code = INTERNAL_ERROR

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_payload(self):
        return {'code': self.code, 'message': self.message}


class NotFound(DuelError):
    default_code = DUEL_NOT_FOUND


class NotAuthorized(DuelError):
    default_code = NOT_IN_DUEL


class InvalidState(DuelError):
    default_code = INVALID_STATE


class UpstreamFailure(DuelError):
    """A collaborator (question supply, persistence) failed."""

    default_code = GENERATION_FAILED
