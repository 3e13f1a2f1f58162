"""Exception hierarchy shared by the reconciliation components."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models import SyncRun


class SyncError(RuntimeError):
    """Base class for every error raised by the synchronisation layer."""


class ServiceUnavailable(SyncError):
    """A backing store could not be reached; the current run stops early."""

    guidance = "Retry once the backing service is healthy."

    def __init__(self, message: str, *, partial_run: "Optional[SyncRun]" = None) -> None:
        super().__init__(message)
        self.partial_run = partial_run


class InfrastructureUnavailable(ServiceUnavailable):
    """The external access server's execution environment is unreachable."""

    guidance = (
        "Unable to reach the VPN access server environment. "
        "Check that its container is running and reachable from this host."
    )


class DirectoryUnavailable(ServiceUnavailable):
    """The authoritative user directory could not be queried."""

    guidance = "Unable to read the user directory. Check the database configuration."


class ExternalLogicalError(SyncError):
    """The external tool ran but rejected the request."""

    def __init__(self, message: str, *, username: str | None = None) -> None:
        super().__init__(message)
        self.username = username


class ExternalUserNotFound(ExternalLogicalError):
    """The username does not exist in the external store."""


class ExternalUserExists(ExternalLogicalError):
    """The username already exists in the external store."""


class UserIneligible(SyncError):
    """A directory user cannot be synchronised yet."""

    def __init__(self, user_id: int, reason: str) -> None:
        super().__init__(f"User {user_id} is not eligible for synchronisation ({reason})")
        self.user_id = user_id
        self.reason = reason


class UserNotFound(SyncError):
    """No directory user exists with the requested identifier."""

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class ValidationError(SyncError):
    """Caller supplied an invalid argument; raised before any I/O."""


class AlreadySyncing(SyncError):
    """A reconciliation run is already in progress."""

    def __init__(self) -> None:
        super().__init__("A synchronisation run is already in progress")


__all__ = [
    "SyncError",
    "ServiceUnavailable",
    "InfrastructureUnavailable",
    "DirectoryUnavailable",
    "ExternalLogicalError",
    "ExternalUserNotFound",
    "ExternalUserExists",
    "UserIneligible",
    "UserNotFound",
    "ValidationError",
    "AlreadySyncing",
]
