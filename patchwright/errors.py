"""
Custom exception types used across patchwright.

Planning stages report problems as data (risks, validation reports), so
most of these are raised by the bundle, signing, and apply layers. The
applier collects transactional failures into an ApplyResult instead of
letting them escape.
"""

from __future__ import annotations

from typing import Any, List, Optional


class PatchwrightError(Exception):
    """Base class for all patchwright specific errors."""


class ConfigError(PatchwrightError):
    """Raised when configuration values are unknown or invalid."""


class PlanValidationError(PatchwrightError):
    """Raised when a plan record is structurally invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class BundleValidationError(PatchwrightError):
    """Raised when a bundle record is structurally invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class SignatureError(PatchwrightError):
    """
    Raised for malformed signature input or an explicit rejection.

    A signature that is merely invalid is reported by the verifier as a
    False result, not as this exception.
    """


class KeyStoreError(PatchwrightError):
    """Raised when signing keys cannot be loaded or written."""


class SnapshotError(PatchwrightError):
    """Raised when a snapshot cannot be created, found, or read."""


class WorkspaceLockedError(PatchwrightError):
    """Raised when another apply transaction holds the workspace lock."""


class ApplyError(PatchwrightError):
    """Base class for failures inside an apply transaction."""


class ApplyValidationError(ApplyError):
    """Raised when a bundle cannot be applied to the current workspace."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class TransactionCancelled(ApplyError):
    """Raised when the caller cancels before any mutation happened."""


class ConflictError(ApplyError):
    """Raised when a conflict is cancelled or left unresolved."""

    def __init__(self, message: str, conflict: Any = None) -> None:
        super().__init__(message)
        self.conflict = conflict


class CommandError(ApplyError):
    """Raised when a pre-apply command fails or times out."""


class FileApplicationError(ApplyError):
    """Raised when writing or deleting a bundle file fails."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message)
        self.path = path


class MigrationError(ApplyError):
    """Raised when a migration cannot be applied."""

    def __init__(self, message: str, migration_id: str) -> None:
        super().__init__(message)
        self.migration_id = migration_id


class VerificationError(ApplyError):
    """Raised when the workspace does not match the bundle after applying."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class RollbackError(PatchwrightError):
    """
    Raised when restoring the pre-apply state fails.

    This is the only failure that leaves the workspace in an unknown
    state and requires an operator.
    """
