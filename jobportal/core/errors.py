class PortalError(Exception):
    """Base error for the job portal client core."""


class AuthError(PortalError):
    """Raised when sign-in is rejected or a session cannot be refreshed."""


class FetchError(PortalError):
    """Raised when a remote read fails; previously fetched data stays in place."""


class UploadError(PortalError):
    """Raised when any file of an upload batch fails."""


class PersistenceError(PortalError):
    """Raised when the data store rejects a write."""


class NotFoundError(PortalError):
    """Raised when the requested record does not exist."""


class ValidationError(PortalError):
    """Raised when operator input is missing required fields."""

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []
