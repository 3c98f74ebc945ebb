"""Error taxonomy shared by the stores, the services and the HTTP layer.

Every error carries the HTTP status it is rendered with, so the server only
needs one exception handler for the whole family.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str = "internal error") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    """Missing or malformed required input."""
    status_code = 400


class ConflictError(ValidationError):
    status_code = 409


class Unauthenticated(StoreError):
    """No credential, or one that could not be read."""
    status_code = 401


class Forbidden(StoreError):
    """Authenticated, but not allowed to do this."""
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class StorageError(StoreError):
    status_code = 500


class NotificationError(StoreError):
    status_code = 502


class ConfigError(StoreError):
    pass
