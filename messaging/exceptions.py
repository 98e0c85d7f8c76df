"""
Typed failures raised by the messaging services.

REST routes render them through a single exception handler; the realtime
gateway turns them into `error` events and keeps the connection open.
"""


class MessagingError(Exception):
    """Base class for messaging failures."""

    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MessagingError):
    """Conversation, message, participant or appointment does not exist."""

    status_code = 404
    kind = "not_found"


class ForbiddenError(MessagingError):
    """Authenticated user is not allowed to act on the resource."""

    status_code = 403
    kind = "forbidden"


class BadRequestError(MessagingError):
    """Payload is invalid for the requested operation."""

    status_code = 400
    kind = "bad_request"


class InfrastructureError(MessagingError):
    """A backing service (database, Redis) is unavailable."""

    status_code = 503
    kind = "service_unavailable"
