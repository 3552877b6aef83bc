"""
Error taxonomy for the ordering service.

Domain modules raise these; main.py turns them into JSON responses with the
matching status code. Every error is recoverable at the boundary where the
user action started.
"""


class OrderingError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(OrderingError):
    status_code = 400


class NotAuthenticated(OrderingError):
    status_code = 401


class NotAuthorized(OrderingError):
    status_code = 403


class NotFound(OrderingError):
    status_code = 404


class PreconditionFailed(OrderingError):
    status_code = 409


class IllegalTransition(PreconditionFailed):
    pass


class ActiveOrderExists(PreconditionFailed):
    pass


class ChatClosed(PreconditionFailed):
    pass


class RateLimited(OrderingError):
    status_code = 429


class TransientIOError(OrderingError):
    status_code = 503
