"""
Exception hierarchy shared by the directory client, the Mailchimp client and the sync pipeline.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SourceUnavailable(SyncError):
    """Raised when a call to the LDAP directory fails."""
    pass


class DestinationUnavailable(SyncError):
    """Raised when a call to the Mailchimp API fails."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class NotFound(SyncError):
    """Raised when no group or list matches the requested name."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"No {kind} named '{name}' was found")


class UpsertFailed(SyncError):
    """Raised when a subscriber upsert fails; the run stops at the first one."""

    def __init__(self, email: str, cause: Exception):
        self.email = email
        self.cause = cause
        super().__init__(f"Failed to upsert {email}: {cause}")
