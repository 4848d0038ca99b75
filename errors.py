"""
Error taxonomy for the API.

Every error the data layer raises on purpose derives from ApiError and
carries the HTTP status it should be rendered with.
"""
from typing import Optional


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    status_code = 400


class Conflict(ApiError):
    status_code = 400


class InvalidCollection(ApiError):
    status_code = 400

    def __init__(self, name: str):
        super().__init__(f"Invalid collection: {name}")
        self.name = name


class InvalidCredentials(ApiError):
    status_code = 401


class Unauthorized(ApiError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFound(ApiError):
    status_code = 404


class StorageError(ApiError):
    """Read or write failure in the backing store. Rendered without detail."""
    status_code = 500


class StorageUnavailable(StorageError):
    status_code = 503

    def __init__(self, message: str = "Database not connected"):
        super().__init__(message)


class DuplicateKey(Conflict):
    """A unique index in the store rejected a write. `index` names it."""

    def __init__(self, index: str, message: str = "Record conflicts with an existing record"):
        super().__init__(message)
        self.index = index
