"""Error taxonomy shared by the session engine and its HTTP surface."""


class EngineError(Exception):
    """Base class for errors raised by the session engine."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(EngineError):
    """Raised when no caller identity accompanies an operation."""

    status_code = 401


class NotFound(EngineError):
    """Raised when a session, scenario or question is missing or not owned by the caller."""

    status_code = 404


class InvalidState(EngineError):
    """Raised when an operation is not legal for the session's current status."""

    status_code = 409


class PersistenceConflict(EngineError):
    """Raised when a turn number collides twice in a row."""

    status_code = 409


class GeneratorUnavailable(EngineError):
    """Raised inside the generator client; always recovered by falling back."""

    status_code = 503
