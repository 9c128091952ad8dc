"""Errores de dominio; cada uno lleva un ``code`` estable."""
from __future__ import annotations


class LibraryError(Exception):
    code = "LIBRARY_ERROR"

    def __init__(self, message: str, code: str | None = None, **data):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.data = data

    def __str__(self) -> str:
        return self.message


class NotFound(LibraryError):
    code = "NOT_FOUND"


class ResourceExhausted(LibraryError):
    code = "NO_AVAILABLE_COPIES"


class InvalidState(LibraryError):
    code = "INVALID_STATE"


class Conflict(LibraryError):
    code = "CONFLICT"


class Unauthorized(LibraryError):
    code = "UNAUTHORIZED"


class Forbidden(LibraryError):
    code = "FORBIDDEN"


class ValidationFailed(LibraryError):
    code = "VALIDATION_FAILED"
