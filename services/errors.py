"""Exception taxonomy for the local data migration pipeline.

Most of these are never raised across component boundaries: lower layers
report problems as structured values and the orchestrator decides whether an
attempt failed.  The classes still give every failure a name so log records
and error messages can be attributed consistently.
"""
from __future__ import annotations


class MigrationError(RuntimeError):
    """Base class for migration pipeline failures."""


class DetectionError(MigrationError):
    """A recognized store key held malformed serialized data."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Could not read '{key}' from the local store: {reason}")
        self.key = key
        self.reason = reason


class ValidationError(MigrationError):
    """A record failed its required-field checks."""


class TransferError(MigrationError):
    """A single record could not be written to the remote service."""

    def __init__(self, record_type: str, message: str) -> None:
        super().__init__(message)
        self.record_type = record_type


class IntegrityError(MigrationError):
    """Post-transfer counts do not reconcile with pre-transfer counts."""


class RollbackError(MigrationError):
    """No restore source is available or the restore payload is invalid."""


class RemoteWriteError(MigrationError):
    """Raised by remote writers when the remote service rejects a record."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MigrationStepError(MigrationError):
    """Raised when a wizard action is not allowed in the current step."""


class MigrationInProgressError(MigrationError):
    """Raised when a second migration is started against the same store."""


__all__ = [
    "DetectionError",
    "IntegrityError",
    "MigrationError",
    "MigrationInProgressError",
    "MigrationStepError",
    "RemoteWriteError",
    "RollbackError",
    "TransferError",
    "ValidationError",
]
