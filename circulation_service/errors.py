"""
Failures reported by the circulation core.

Each subclass is a distinct, matchable condition; the HTTP adapter turns
``code`` and ``http_status`` into a response without inspecting messages.
"""


class CirculationError(Exception):
    code = "circulation_error"
    http_status = 400

    def __init__(self, message=None):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(CirculationError):
    code = "not_found"
    http_status = 404


class Unauthorized(CirculationError):
    code = "unauthorized"
    http_status = 403


class InvalidState(CirculationError):
    code = "invalid_state"
    http_status = 409


class Unavailable(CirculationError):
    code = "unavailable"
    http_status = 409


class Duplicate(CirculationError):
    code = "duplicate"
    http_status = 409


class LimitExceeded(CirculationError):
    code = "limit_exceeded"
    http_status = 422


class Discontinued(CirculationError):
    code = "discontinued"
    http_status = 410


class Busy(CirculationError):
    """Another operation held the same book for longer than the lock timeout."""
    code = "busy"
    http_status = 503
