"""Installation-specific exceptions.

Every error carries a human-readable message plus a context dict so callers
can report which ref, remote or path was involved.
"""


class InstallationError(Exception):
    """Base exception for installation operations."""

    def __init__(self, message: str, context: dict | None = None):
        """Initialize with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dict with additional context (ref, remote, paths, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class MalformedRefError(InstallationError):
    """Ref string or ref component is not well formed."""


class MalformedBundleError(InstallationError):
    """Bundle file is unreadable or lacks required signing material."""


class AlreadyInstalledError(InstallationError):
    """Ref already has a deploy directory."""


class NotInstalledError(InstallationError):
    """Ref has no deployment to operate on."""


class NotFoundError(InstallationError):
    """Query target (ref, remote, override) does not exist."""


class BusyError(InstallationError):
    """Installation lock is held by someone else."""


class OperationCancelledError(InstallationError):
    """Operation was cancelled through its cancellable token."""


class TransferError(InstallationError):
    """Object store or network transfer failed."""
