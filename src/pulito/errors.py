"""Error taxonomy shared by every core operation."""

from __future__ import annotations

from pathlib import Path
from typing import Any


class PulitoError(Exception):
    """Base class for all errors raised by the cleanup core."""


class SecurityViolation(PulitoError):
    """Raised when a path fails validation.

    ``check`` names the validation step that failed, e.g. ``"traversal"``,
    ``"system_path"`` or ``"boundary"``.  Always fatal to the single
    operation that triggered it.
    """

    def __init__(self, check: str, path: str | Path, message: str) -> None:
        super().__init__(f"{check}: {message} ({path})")
        self.check = check
        self.path = str(path)
        self.message = message


class NotFound(PulitoError):
    """Raised when an id or path no longer exists."""


class DestinationExists(PulitoError):
    """Raised when a restore target is already occupied."""


class SourceMissing(PulitoError):
    """Raised when a trash record points at a quarantine object that is gone."""


class QuarantineError(PulitoError):
    """Raised when an object could not be moved in or out of quarantine.

    The original object is left in place, so the operation can be retried.
    """


class OperationTimeout(PulitoError):
    """Raised when an operation exceeds its wall-clock budget."""


class ResourceLimit(PulitoError):
    """Raised when an operation exceeds its memory or item-count bounds."""


class ScanTimeout(OperationTimeout):
    """Raised when a scan runs out of time.

    ``partial`` holds the report collected before the deadline.
    """

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class ScanResourceLimit(ResourceLimit):
    """Raised when a scan exceeds its item-count or memory limit.

    ``partial`` holds the report collected before the limit was reached.
    """

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class ScanCancelled(PulitoError):
    """Raised when a scan is cancelled through its cancel token."""


class OperationBusy(PulitoError):
    """Raised when an operation of the same class is already running."""


class PackageError(PulitoError):
    """Raised when package metadata cannot be read or a removal fails."""
