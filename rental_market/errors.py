"""Typed failures raised by the rental lifecycle services.

Every error carries a message that is safe to show to the acting user and the
HTTP status the blueprints answer with.
"""
from __future__ import annotations


class RentalError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
        }


class Unauthorized(RentalError):
    status_code = 403


class NotFound(RentalError):
    status_code = 404


class InvalidStateTransition(RentalError):
    status_code = 409


class ValidationError(RentalError):
    status_code = 400


class OverbookedError(RentalError):
    status_code = 409


class ExternalServiceError(RentalError):
    status_code = 502
    retryable = True


class OperationFailed(RentalError):
    """Internal failure with the details kept out of the message."""

    status_code = 500

    def __init__(self, message: str = "Operation failed. Please try again.") -> None:
        super().__init__(message)


__all__ = [
    "RentalError",
    "Unauthorized",
    "NotFound",
    "InvalidStateTransition",
    "ValidationError",
    "OverbookedError",
    "ExternalServiceError",
    "OperationFailed",
]
