"""Step-based wizard that moves the local dataset to the remote service.

The wizard walks ``detect -> review -> backup -> migrate -> complete`` and
falls into ``error`` when a transfer cannot be reconciled.  Records are sent
one at a time in dependency order; a failing record is reported and the
transfer carries on, but the attempt only completes when every record made it
and the integrity check finds no mismatch.  Completing purges the local
dataset and releases the restore point after a grace period.
"""
from __future__ import annotations

import argparse
import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from config import MigrationSettings, load_settings
from data_paths import ensure_data_root
from services.backup import (
    BackupArtifact,
    BackupError,
    RestorePointInfo,
    RestorePointSlot,
    create_backup_artifact,
    write_backup_artifact,
)
from services.dataset import (
    CleanDataset,
    MigrationStats,
    compute_stats,
    has_migratable_data,
    read_dataset,
)
from services.errors import (
    IntegrityError,
    MigrationInProgressError,
    MigrationStepError,
    TransferError,
)
from services.integrity import check_integrity
from services.records import (
    RecordSchema,
    RecordType,
    build_dispatch_table,
    iter_schemas,
)
from services.rollback import import_from_artifact, restore
from services.state import MigrationState, active_operation, exclusive_operation
from services.validation import establishment_is_migratable, prepare, validate

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Migration cancelled by the user"


class MigrationStep(str, Enum):
    DETECT = "detect"
    REVIEW = "review"
    BACKUP = "backup"
    MIGRATE = "migrate"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class MigrationResult:
    """Outcome of one migration attempt."""

    success: bool
    message: str
    counts: MigrationStats = field(default_factory=MigrationStats)
    errors: List[str] = field(default_factory=list)
    mismatches: List[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "migratedData": self.counts.to_dict(),
            "errors": list(self.errors),
            "mismatches": list(self.mismatches),
            "cancelled": self.cancelled,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationWizard:
    """Drive one local store through the migration steps."""

    def __init__(
        self,
        store,
        writer,
        *,
        settings: Optional[MigrationSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.settings = settings or MigrationSettings()
        self._clock = clock or _utcnow
        self._slot = RestorePointSlot(store)
        self._cancel_event = threading.Event()
        self._running = False
        self.step: Optional[MigrationStep] = None
        self.state = MigrationState()
        self.stats: Optional[MigrationStats] = None
        self.result: Optional[MigrationResult] = None
        self.last_error: Optional[str] = None
        self.backup_created = False
        self.restore_point_created = False

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------
    def _require(self, *allowed: Optional[MigrationStep]) -> None:
        if self.step not in allowed:
            current = self.step.value if self.step else "idle"
            expected = ", ".join(step.value if step else "idle" for step in allowed)
            raise MigrationStepError(f"Action not allowed in step '{current}' (expected {expected})")

    def _enter(self, step: Optional[MigrationStep]) -> None:
        previous = self.step.value if self.step else "idle"
        self.step = step
        LOGGER.info("Migration wizard: %s -> %s", previous, step.value if step else "idle")

    def _fail(self, message: str) -> None:
        self.last_error = message
        self._enter(MigrationStep.ERROR)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self) -> bool:
        """Detect migratable data and enter ``review``.

        Returns ``False`` without entering any step when the store was already
        migrated or holds nothing to migrate.  Only reads the store.
        """
        self._require(None, MigrationStep.REVIEW)
        self.step = MigrationStep.DETECT
        self.state = MigrationState.load(self.store)
        if self.state.completed:
            LOGGER.info("Local data was already migrated on %s", self.state.completed_at)
            self.step = None
            return False
        if not has_migratable_data(self.store):
            LOGGER.info("No local data to migrate")
            self.step = None
            return False
        self.stats = compute_stats(read_dataset(self.store))
        self.result = None
        self.last_error = None
        self._enter(MigrationStep.REVIEW)
        return True

    def confirm_review(self) -> None:
        self._require(MigrationStep.REVIEW)
        self._enter(MigrationStep.BACKUP)

    def create_backup(self) -> Optional[BackupArtifact]:
        """Produce a downloadable backup and move on to ``migrate``."""
        self._require(MigrationStep.BACKUP)
        try:
            artifact = create_backup_artifact(read_dataset(self.store), now=self._clock())
        except Exception as exc:  # pragma: no cover - defensive logging
            LOGGER.exception("Failed to create backup")
            self._fail(f"Could not create the backup: {exc}")
            return None
        self.backup_created = True
        self._enter(MigrationStep.MIGRATE)
        return artifact

    def skip_backup(self) -> None:
        self._require(MigrationStep.BACKUP)
        self._enter(MigrationStep.MIGRATE)

    def migrate(self) -> MigrationResult:
        """Transfer every record type and decide between ``complete`` and ``error``."""
        self._require(MigrationStep.MIGRATE)
        with exclusive_operation(self.store, "migration", stale_after=self.settings.lock_timeout_seconds):
            self._running = True
            self._cancel_event.clear()
            try:
                result = self._run_attempt()
            except Exception as exc:
                LOGGER.exception("Migration attempt failed")
                result = MigrationResult(
                    success=False,
                    message=f"Migration failed: {exc}",
                    errors=[str(exc)],
                )
            finally:
                self._running = False

        self.result = result
        if result.success:
            self.last_error = None
            self._enter(MigrationStep.COMPLETE)
        else:
            self._fail(result.message)
        return result

    def cancel(self) -> bool:
        """Abandon the ``migrate`` step.

        A running transfer stops before its next record; transferred records
        stay on the remote side and the restore point is kept.
        """
        if self.step is not MigrationStep.MIGRATE:
            return False
        if self._running:
            self._cancel_event.set()
            LOGGER.info("Cancellation requested")
        else:
            self._enter(None)
        return True

    def retry(self) -> bool:
        """Start over from the current contents of the store."""
        self._require(MigrationStep.ERROR)
        self.step = None
        return self.start()

    def rollback(self, source: Any = None) -> bool:
        """Restore the store and return to ``review``.

        Without *source* the restore point is used; otherwise *source* is a
        backup artifact in any accepted form.
        """
        self._require(MigrationStep.ERROR, MigrationStep.COMPLETE)
        with exclusive_operation(self.store, "rollback", stale_after=self.settings.lock_timeout_seconds):
            restored = restore(self.store, source)
        if not restored:
            self.last_error = "Could not restore the data from the restore point"
            return False
        self.restore_point_created = False
        self.backup_created = False
        self.result = None
        self.step = None
        if not self.start():
            self._enter(None)
        return True

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------
    def _run_attempt(self) -> MigrationResult:
        now = self._clock()
        self._slot.acquire(now=now)
        self.restore_point_created = True

        dataset = read_dataset(self.store)
        baseline = compute_stats(dataset)
        self.stats = baseline

        errors = list(validate(dataset).errors)
        clean = prepare(dataset, now=now, timezone=self.settings.timezone)
        errors.extend(clean.rejected)

        counts, transfer_errors, cancelled = self._transfer(clean)
        errors.extend(transfer_errors)

        integrity = check_integrity(baseline, counts)
        if not integrity.ok:
            LOGGER.error("%s", IntegrityError("; ".join(integrity.mismatches)))
        success = not cancelled and not errors and integrity.ok

        if success:
            self._finalize(now, dataset.collections.keys())
            message = "Migration completed successfully"
        elif cancelled:
            message = CANCELLED_MESSAGE
        else:
            message = f"Migration finished with {len(errors) + len(integrity.mismatches)} problems"
        LOGGER.info("%s: %s", message, counts.to_dict())
        return MigrationResult(
            success=success,
            message=message,
            counts=counts,
            errors=errors,
            mismatches=integrity.mismatches,
            cancelled=cancelled,
        )

    def _records_for(self, schema: RecordSchema, clean: CleanDataset) -> List[Dict[str, Any]]:
        if schema.record_type is RecordType.ESTABLISHMENT_INFO:
            return [clean.establishment_info] if establishment_is_migratable(clean) else []
        return clean.records(schema.record_type)

    def _transfer(self, clean: CleanDataset) -> Tuple[MigrationStats, List[str], bool]:
        dispatch = build_dispatch_table(self.writer)
        remote_ids: Dict[RecordType, Dict[str, str]] = defaultdict(dict)
        counts = MigrationStats()
        errors: List[str] = []

        for schema in iter_schemas():
            records = self._records_for(schema, clean)
            write = dispatch[schema.record_type]
            transferred = 0
            for record in records:
                if self._cancel_event.is_set():
                    LOGGER.warning("Transfer cancelled before %s %s", schema.label.lower(), schema.describe(record))
                    errors.append(CANCELLED_MESSAGE)
                    return counts, errors, True
                payload = _remote_payload(schema, record, remote_ids)
                try:
                    remote_record = write(payload)
                except Exception as exc:
                    error = TransferError(
                        schema.key, f"Error migrating {schema.label.lower()} {schema.describe(record)}: {exc}"
                    )
                    LOGGER.warning("%s", error)
                    errors.append(str(error))
                    continue
                counts.increment(schema.record_type)
                transferred += 1
                _remember_remote_id(schema, record, remote_record, remote_ids)
            if records:
                LOGGER.info("Transferred %d/%d %s", transferred, len(records), schema.key)
        return counts, errors, False

    def _finalize(self, now: datetime, migrated_keys: Iterable[str]) -> None:
        """Mark the store migrated and purge the keys that were read.

        Keys the reader skipped as unreadable were neither counted nor sent,
        so they stay in the store.
        """
        state = MigrationState.completed_now(now)
        updates: Dict[str, Optional[str]] = {key: None for key in migrated_keys}
        updates.update(state.store_updates())
        self.store.apply(updates)
        self.state = state
        self._slot.schedule_release(self.settings.restore_point_grace_seconds)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def restore_point_info(self) -> RestorePointInfo:
        return self._slot.info()

    @property
    def can_rollback(self) -> bool:
        return self.step in (MigrationStep.ERROR, MigrationStep.COMPLETE) and self.restore_point_info.exists

    def snapshot(self) -> Dict[str, Any]:
        return {
            "step": self.step.value if self.step else None,
            "stats": self.stats.to_dict() if self.stats else None,
            "result": self.result.to_dict() if self.result else None,
            "lastError": self.last_error,
            "backupCreated": self.backup_created,
            "restorePoint": self.restore_point_info.to_dict(),
            "canRollback": self.can_rollback,
            "migrationState": MigrationState.load(self.store).to_dict(),
            "activeOperation": active_operation(self.store),
        }


def _remote_payload(
    schema: RecordSchema, record: Mapping[str, Any], remote_ids: Mapping[RecordType, Mapping[str, str]]
) -> Dict[str, Any]:
    payload = schema.remote_payload(record)
    for field_name, target in schema.references.items():
        local_id = payload.get(field_name)
        mapped = remote_ids.get(target, {}).get(local_id) if local_id is not None else None
        if mapped:
            payload[field_name] = mapped
    return payload


def _remember_remote_id(
    schema: RecordSchema,
    record: Mapping[str, Any],
    remote_record: Any,
    remote_ids: Dict[RecordType, Dict[str, str]],
) -> None:
    if not isinstance(remote_record, Mapping):
        return
    remote_id = remote_record.get("id") or remote_record.get("_id")
    local_id = record.get("id")
    if remote_id and local_id:
        remote_ids[schema.record_type][str(local_id)] = str(remote_id)


# ----------------------------------------------------------------------
# Command line interface
# ----------------------------------------------------------------------

def _open_store(database: Optional[Path]):
    from database import LocalStore

    return LocalStore(database)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _command_status(args: argparse.Namespace) -> int:
    store = _open_store(args.database)
    wizard = MigrationWizard(store, writer=None)
    needed = wizard.start()
    snapshot = wizard.snapshot()
    snapshot["migrationNeeded"] = needed
    _print_json(snapshot)
    return 0


def _command_export(args: argparse.Namespace) -> int:
    store = _open_store(args.database)
    artifact = create_backup_artifact(read_dataset(store))
    try:
        path = write_backup_artifact(artifact, args.output_dir or ensure_data_root() / "backups")
    except (BackupError, OSError) as exc:
        LOGGER.error("Export failed: %s", exc)
        return 1
    print(path)
    return 0


def _command_run(args: argparse.Namespace) -> int:
    from services.remote import HttpRemoteWriter

    settings = load_settings()
    store = _open_store(args.database)
    wizard = MigrationWizard(store, HttpRemoteWriter.from_settings(settings), settings=settings)
    if not wizard.start():
        print("Nothing to migrate.")
        return 0
    _print_json(wizard.stats.to_dict())
    wizard.confirm_review()
    if args.skip_backup:
        wizard.skip_backup()
    else:
        artifact = wizard.create_backup()
        if artifact is None:
            LOGGER.error("Backup failed: %s", wizard.last_error)
            return 1
        print(write_backup_artifact(artifact, args.backup_dir or ensure_data_root() / "backups"))
    try:
        result = wizard.migrate()
    except MigrationInProgressError as exc:
        LOGGER.error("%s", exc)
        return 1
    _print_json(result.to_dict())
    return 0 if result.success else 1


def _command_rollback(args: argparse.Namespace) -> int:
    store = _open_store(args.database)
    source = args.source.read_bytes() if args.source else None
    try:
        with exclusive_operation(store, "rollback", stale_after=load_settings().lock_timeout_seconds):
            restored = restore(store, source)
    except MigrationInProgressError as exc:
        LOGGER.error("%s", exc)
        return 1
    if not restored:
        print("Nothing was restored.")
        return 1
    print("Local data restored.")
    return 0


def _command_import(args: argparse.Namespace) -> int:
    store = _open_store(args.database)
    try:
        with exclusive_operation(store, "import", stale_after=load_settings().lock_timeout_seconds):
            outcome = import_from_artifact(store, args.file.read_bytes())
    except MigrationInProgressError as exc:
        LOGGER.error("%s", exc)
        return 1
    _print_json(outcome.to_dict())
    return 0 if outcome.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate locally stored records to the remote service.")
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help="Path to the local store database (defaults to the data directory)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show what would be migrated")
    status.set_defaults(handler=_command_status)

    export = subparsers.add_parser("export", help="Write a backup of the local data")
    export.add_argument("--output-dir", type=Path, default=None)
    export.set_defaults(handler=_command_export)

    run = subparsers.add_parser("run", help="Migrate the local data")
    run.add_argument("--skip-backup", action="store_true", help="Do not write a backup file first")
    run.add_argument("--backup-dir", type=Path, default=None)
    run.set_defaults(handler=_command_run)

    rollback = subparsers.add_parser("rollback", help="Restore the local data")
    rollback.add_argument(
        "--from",
        dest="source",
        type=Path,
        default=None,
        help="Backup file to restore instead of the restore point",
    )
    rollback.set_defaults(handler=_command_rollback)

    importer = subparsers.add_parser("import", help="Load a backup file into the local store")
    importer.add_argument("file", type=Path)
    importer.set_defaults(handler=_command_import)
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python migrate.py``."""

    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return args.handler(args)


__all__ = [
    "CANCELLED_MESSAGE",
    "MigrationResult",
    "MigrationStep",
    "MigrationWizard",
    "build_parser",
    "main",
]
