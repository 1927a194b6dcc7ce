"""Restore the local store from a restore point or an exported backup."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from services.backup import BackupArtifact, BackupError, RestorePointSlot, parse_backup_payload
from services.dataset import (
    RESTORE_POINT_KEY,
    MigrationStats,
    compute_stats,
    read_dataset,
    serialize_value,
)
from services.errors import RollbackError
from services.records import RecordType
from services.state import MigrationState
from services.validation import validate

LOGGER = logging.getLogger(__name__)


@dataclass
class ImportResult:
    success: bool
    message: str
    stats: Optional[MigrationStats] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "stats": self.stats.to_dict() if self.stats else None,
        }


def _report(error: RollbackError) -> bool:
    LOGGER.error("Rollback failed: %s", error)
    return False


def restore(store, source: Any = None) -> bool:
    """Write a backup or the restore point back into *store*.

    *source* may be a :class:`BackupArtifact`, its JSON text or bytes, or a
    mapping; it must pass validation before anything is written.  Without a
    source the active restore point is used and consumed, and its stored
    text is written back unchanged.  Only keys held by the source are
    written; other keys are left alone.  Returns ``False``, leaving the store
    untouched, when no usable source is available.
    """

    slot = RestorePointSlot(store)
    if source is not None:
        try:
            artifact = parse_backup_payload(source)
        except BackupError as exc:
            return _report(RollbackError(str(exc)))
        dataset = artifact.dataset
        report = validate(dataset)
        if not report.valid:
            return _report(RollbackError(f"Invalid backup: {'; '.join(report.errors)}"))
        updates: Dict[str, Optional[str]] = {
            key: serialize_value(value) for key, value in dataset.collections.items()
        }
        origin = f"backup artifact from {artifact.timestamp}"
    else:
        restore_point = slot.load()
        if restore_point is None:
            return _report(RollbackError("No restore point is available"))
        updates = dict(restore_point.entries)
        updates[RESTORE_POINT_KEY] = None
        origin = f"restore point from {restore_point.timestamp}"

    updates.update(MigrationState.cleared().store_updates())

    try:
        store.apply(updates)
    except sqlite3.Error as exc:
        return _report(RollbackError(f"Could not write to the local store: {exc}"))

    if source is None:
        slot.cancel_scheduled_release()
    LOGGER.info("Local store restored from %s", origin)
    return True


def import_from_artifact(store, raw: Any) -> ImportResult:
    """Load an externally supplied backup into the local store.

    The payload is validated before anything is written; a fresh restore point
    of the current store is taken right before the overwrite.
    """

    try:
        artifact: BackupArtifact = parse_backup_payload(raw)
    except BackupError as exc:
        LOGGER.warning("Import rejected: %s", exc)
        return ImportResult(success=False, message=str(exc))

    dataset = artifact.dataset
    report = validate(dataset)
    if not report.valid:
        LOGGER.warning("Import rejected with %d validation errors", len(report.errors))
        return ImportResult(success=False, message=f"Invalid data: {', '.join(report.errors)}")

    RestorePointSlot(store).acquire()

    updates: Dict[str, Optional[str]] = {}
    imported = 0
    for key, value in dataset.collections.items():
        updates[key] = serialize_value(value)
        if isinstance(value, list):
            imported += len(value)
        elif key == RecordType.ESTABLISHMENT_INFO.value:
            imported += 1
    updates.update(MigrationState.cleared().store_updates())

    try:
        store.apply(updates)
    except sqlite3.Error as exc:
        LOGGER.exception("Failed to write imported data")
        return ImportResult(success=False, message=f"Could not write to the local store: {exc}")

    stats = compute_stats(read_dataset(store))
    LOGGER.info("Imported %d items from backup dated %s", imported, artifact.timestamp)
    return ImportResult(
        success=True,
        message=f"Data imported successfully. {imported} items processed.",
        stats=stats,
    )


__all__ = ["ImportResult", "import_from_artifact", "restore"]
