from __future__ import annotations


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ContentionError(ServiceError):
    """A bounded retry gave up on a uniqueness race; the caller may try again."""

    status_code = 409
    retryable = True
