"""
Workflow error taxonomy.

Each error carries the HTTP status it maps to and a caller-safe message.
PersistenceFault keeps the underlying cause for diagnostics only.
"""
from __future__ import annotations


class SigningError(Exception):
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SigningError):
    status_code = 400
    default_message = "Invalid input."


class InvalidTransitionError(ValidationError):
    default_message = "Document status does not allow this action."


class NotAuthorizedError(SigningError):
    status_code = 403
    default_message = "You are not allowed to sign this document."


class OutOfOrderError(NotAuthorizedError):
    default_message = "Earlier signers must sign first."


class AlreadySignedError(SigningError):
    status_code = 409
    default_message = "You have already signed this document."


class NotFoundError(SigningError):
    status_code = 404
    default_message = "Document not found."


class PersistenceFault(SigningError):
    status_code = 500
    default_message = "The operation could not be completed. Please try again later."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail
