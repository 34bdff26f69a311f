"""Error kinds surfaced to API callers.

Each error carries a stable ``reason`` string that is rendered as the
``error`` field of the JSON body. Store errors and stack traces stay in the
server logs.
"""


class SchedulingError(Exception):
    status_code = 500
    default_reason = 'Internal server error'

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class BadRequestError(SchedulingError):
    status_code = 400
    default_reason = 'Bad request'


class AuthenticationError(SchedulingError):
    status_code = 401
    default_reason = 'Unauthorized: Invalid or missing API key'


class PermissionDeniedError(SchedulingError):
    status_code = 403
    default_reason = 'FORBIDDEN'


class NotFoundError(SchedulingError):
    status_code = 404
    default_reason = 'Not found'


class UnprocessableInputError(SchedulingError):
    status_code = 422
    default_reason = 'Unprocessable input'


class PersistenceUnavailableError(SchedulingError):
    status_code = 503
    default_reason = 'Database unavailable'
