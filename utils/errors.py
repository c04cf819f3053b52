"""
Service-layer exception hierarchy.

Every error a service raises on purpose inherits from ServiceError, which
carries the HTTP status and a machine-readable code.  The application
factory registers a single handler that renders them as JSON.
"""


class ServiceError(Exception):
    """Base class for expected service failures."""

    status_code = 500
    default_code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self):
        payload = {'code': self.code, 'message': self.message}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationError(ServiceError):
    """Malformed input (unknown strategy, negative budget, bad status change)."""
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class NotFoundError(ServiceError):
    """Record absent, or owned by another user."""
    status_code = 404
    default_code = 'NOT_FOUND'


class ConflictError(ServiceError):
    """State conflict: stale or non-completed activation, duplicate rows."""
    status_code = 409
    default_code = 'CONFLICT'


class PreconditionError(ServiceError):
    """Operation not allowed in the record's current status."""
    status_code = 412
    default_code = 'PRECONDITION_FAILED'


class ProjectionError(ServiceError):
    """Loan data the projection engine cannot amortize."""
    status_code = 500
    default_code = 'PROJECTION_ERROR'
