"""Error taxonomy for safe-upgrade.

Every failure the upgrade engine can surface is an ``UpgradeError`` carrying
a machine-readable ``kind``, whether a rollback target is still available,
and a free-form ``details`` mapping for reports.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable category of an upgrade failure."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    STATE_CAPTURE_FAILED = "STATE_CAPTURE_FAILED"
    SCRIPT_EXECUTION_FAILED = "SCRIPT_EXECUTION_FAILED"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    PACKAGE_MANAGER_ERROR = "PACKAGE_MANAGER_ERROR"
    INVALID_VERSION = "INVALID_VERSION"


class UpgradeError(Exception):
    """Base class for all upgrade failures.

    Attributes:
        kind: Category of the failure.
        rollback_available: False when the caller must not assume the
            manifest can still be restored to its snapshot.
        details: Extra context (file paths, counts, stages) for reports.
    """

    kind: ErrorKind = ErrorKind.SCRIPT_EXECUTION_FAILED
    rollback_available: bool = True

    def __init__(
        self,
        message: str,
        *,
        rollback_available: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if rollback_available is not None:
            self.rollback_available = rollback_available
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationFailed(UpgradeError):
    """Malformed input detected before any subprocess was spawned."""

    kind = ErrorKind.VALIDATION_FAILED
    rollback_available = False


class StateCaptureFailed(UpgradeError):
    """The manifest could not be read or parsed."""

    kind = ErrorKind.STATE_CAPTURE_FAILED
    rollback_available = False


class ScriptExecutionFailed(UpgradeError):
    """A gate stage exited non-zero or timed out."""

    kind = ErrorKind.SCRIPT_EXECUTION_FAILED

    @classmethod
    def from_result(cls, stage: str, result: Any) -> ScriptExecutionFailed:
        """Describe a failed ``ExecutionResult`` for a given stage."""
        reason = "timed out" if result.timed_out else f"exited {result.exit_code}"
        return cls(
            f"Script execution failed: {stage} {reason}",
            details={"stage": stage, "exit_code": result.exit_code},
        )


class RollbackFailed(UpgradeError):
    """Restoring the whole-project snapshot did not complete."""

    kind = ErrorKind.ROLLBACK_FAILED
    rollback_available = False


class PackageManagerError(UpgradeError):
    """The package manager binary is missing or rejected its arguments."""

    kind = ErrorKind.PACKAGE_MANAGER_ERROR


class InvalidVersion(UpgradeError, ValueError):
    """A version string is not parseable semver."""

    kind = ErrorKind.INVALID_VERSION
