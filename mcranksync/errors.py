from __future__ import annotations


class RankSyncError(Exception):
    status = 500
    public_message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(RankSyncError):
    status = 400
    public_message = "Invalid request"


class AuthError(RankSyncError):
    status = 401
    public_message = "Unauthorized"


class NotFoundError(RankSyncError):
    status = 404
    public_message = "Not found"


class ConflictError(RankSyncError):
    status = 400
    public_message = "Conflicting link"


class ExternalCollaboratorError(RankSyncError):
    """A role grant or revoke against Discord failed."""


class StorageError(RankSyncError):
    """The database raised while serving a request."""
