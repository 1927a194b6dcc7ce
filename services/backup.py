"""Helpers for exporting backups of the local dataset and managing the restore point."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from services.dataset import (
    RESTORE_POINT_KEY,
    LocalDataset,
    compute_stats,
    serialize_value,
    snapshot_entries,
)
from services.records import DATASET_KEYS

__all__ = [
    "BACKUP_FORMAT_VERSION",
    "BackupArtifact",
    "BackupError",
    "RESTORE_POINT_FORMAT_VERSION",
    "RestorePoint",
    "RestorePointInfo",
    "RestorePointSlot",
    "create_backup_artifact",
    "create_restore_point",
    "get_restore_point_info",
    "parse_backup_payload",
    "write_backup_artifact",
]

LOGGER = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"


class BackupError(RuntimeError):
    """Raised when a backup export or import fails due to user correctable errors."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(now: Optional[datetime]) -> str:
    return (now or _utcnow()).isoformat()


@dataclass(frozen=True)
class BackupArtifact:
    """Timestamped, downloadable copy of the local dataset."""

    timestamp: str
    data: Dict[str, Any]
    version: str = BACKUP_FORMAT_VERSION

    @property
    def dataset(self) -> LocalDataset:
        return LocalDataset.from_dict(self.data)

    @property
    def filename(self) -> str:
        return f"autocontrol-backup-{self.timestamp[:10]}.json"

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "version": self.version, "data": self.data}

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")


RESTORE_POINT_FORMAT_VERSION = "2.0"


@dataclass(frozen=True)
class RestorePoint:
    """Internally managed snapshot used for programmatic rollback.

    ``entries`` holds the stored text of every recognized key that existed
    when the snapshot was taken, malformed values included, so a rollback
    writes back exactly the same bytes.
    """

    timestamp: str
    entries: Dict[str, str]
    version: str = RESTORE_POINT_FORMAT_VERSION

    @property
    def data(self) -> Dict[str, Any]:
        """Decoded view of the snapshot; unreadable entries are left out."""
        decoded: Dict[str, Any] = {}
        for key, raw in self.entries.items():
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if value is not None:
                decoded[key] = value
        return decoded

    @property
    def dataset(self) -> LocalDataset:
        return LocalDataset.from_dict(self.data)

    def serialize(self) -> str:
        return json.dumps(
            {"timestamp": self.timestamp, "version": self.version, "entries": self.entries},
            ensure_ascii=False,
        )


@dataclass(frozen=True)
class RestorePointInfo:
    exists: bool
    timestamp: Optional[str] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"exists": self.exists, "timestamp": self.timestamp, "size": self.size}


def create_backup_artifact(dataset: LocalDataset, *, now: Optional[datetime] = None) -> BackupArtifact:
    """Wrap *dataset* with a creation timestamp.

    Only the artifact is produced; choosing where it is saved is up to the
    caller.
    """
    artifact = BackupArtifact(timestamp=_timestamp(now), data=json.loads(json.dumps(dataset.to_dict())))
    LOGGER.info(
        "Created backup artifact %s (%d records)", artifact.filename, compute_stats(dataset).total()
    )
    return artifact


def write_backup_artifact(artifact: BackupArtifact, destination_dir: Path) -> Path:
    """Persist *artifact* under ``destination_dir`` and return its path."""

    destination_dir = Path(destination_dir).expanduser()
    destination_dir.mkdir(parents=True, exist_ok=True)
    target = destination_dir / artifact.filename
    suffix = 1
    while target.exists():
        target = destination_dir / f"{Path(artifact.filename).stem}-{suffix}.json"
        suffix += 1
    target.write_bytes(artifact.to_bytes())
    if target.stat().st_size == 0:
        target.unlink(missing_ok=True)
        raise BackupError("Backup artifact was empty.")
    return target


def parse_backup_payload(raw: Union[bytes, str, Mapping[str, Any], BackupArtifact]) -> BackupArtifact:
    """Decode a backup in any accepted shape.

    Accepted shapes are the wrapped ``{timestamp, data}`` form, the older
    ``{exportDate, version, data}`` export and a bare dataset mapping.
    """

    if isinstance(raw, BackupArtifact):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise BackupError("The backup file is not valid UTF-8 text.") from exc
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackupError("The backup file is not valid JSON.") from exc
    else:
        payload = raw

    if not isinstance(payload, Mapping):
        raise BackupError("Invalid backup format.")

    if isinstance(payload.get("data"), Mapping):
        timestamp = payload.get("timestamp") or payload.get("exportDate") or _timestamp(None)
        version = str(payload.get("version") or BACKUP_FORMAT_VERSION)
        data = payload["data"]
    else:
        timestamp = _timestamp(None)
        version = BACKUP_FORMAT_VERSION
        data = payload

    dataset = LocalDataset.from_dict(data)
    if not dataset.collections:
        raise BackupError("The backup does not contain any recognized data.")
    return BackupArtifact(timestamp=str(timestamp), data=dataset.to_dict(), version=version)


class RestorePointSlot:
    """Single-slot holder for the restore point of a local store.

    ``acquire`` overwrites whatever the slot held, ``consume`` hands the
    restore point to a rollback and empties the slot, and ``schedule_release``
    empties it after a delay unless it was replaced in the meantime.
    """

    _timers: Dict[str, threading.Timer] = {}
    _timers_lock = threading.Lock()

    def __init__(self, store) -> None:
        self.store = store

    def cancel_scheduled_release(self) -> None:
        with self._timers_lock:
            timer = self._timers.pop(self.store.identity, None)
        if timer is not None:
            timer.cancel()

    def acquire(self, dataset: Optional[LocalDataset] = None, *, now: Optional[datetime] = None) -> RestorePoint:
        """Snapshot the store, or *dataset* when given, into the slot."""
        self.cancel_scheduled_release()
        if dataset is None:
            entries = snapshot_entries(self.store)
        else:
            entries = {key: serialize_value(value) for key, value in dataset.to_dict().items()}
        restore_point = RestorePoint(timestamp=_timestamp(now), entries=entries)
        self.store.set_item(RESTORE_POINT_KEY, restore_point.serialize())
        LOGGER.info("Restore point created at %s", restore_point.timestamp)
        return restore_point

    def load(self) -> Optional[RestorePoint]:
        raw = self.store.get_item(RESTORE_POINT_KEY)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Stored restore point is not valid JSON")
            return None
        if not isinstance(payload, dict) or not payload.get("timestamp"):
            LOGGER.warning("Stored restore point has an invalid format")
            return None
        entries = payload.get("entries")
        if not isinstance(entries, dict) or not all(isinstance(value, str) for value in entries.values()):
            LOGGER.warning("Stored restore point has invalid entries")
            return None
        return RestorePoint(
            timestamp=str(payload["timestamp"]),
            entries={key: value for key, value in entries.items() if key in DATASET_KEYS},
            version=str(payload.get("version") or RESTORE_POINT_FORMAT_VERSION),
        )

    def consume(self) -> Optional[RestorePoint]:
        restore_point = self.load()
        if restore_point is not None:
            self.release()
        return restore_point

    def release(self) -> None:
        self.cancel_scheduled_release()
        self.store.remove_item(RESTORE_POINT_KEY)
        LOGGER.info("Restore point released")

    def schedule_release(self, delay: float) -> Optional[threading.Timer]:
        """Release the current restore point after *delay* seconds."""
        current = self.info()
        if not current.exists:
            return None
        self.cancel_scheduled_release()

        def _release_if_unchanged() -> None:
            with self._timers_lock:
                self._timers.pop(self.store.identity, None)
            if self.info().timestamp != current.timestamp:
                return
            try:
                self.store.remove_item(RESTORE_POINT_KEY)
                LOGGER.info("Restore point from %s released after grace period", current.timestamp)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Failed to release restore point")

        timer = threading.Timer(delay, _release_if_unchanged)
        timer.daemon = True
        with self._timers_lock:
            self._timers[self.store.identity] = timer
        timer.start()
        return timer

    def info(self) -> RestorePointInfo:
        size = self.store.item_size(RESTORE_POINT_KEY)
        if size is None:
            return RestorePointInfo(exists=False)
        head = self.store.read_prefix(RESTORE_POINT_KEY, 128) or ""
        return RestorePointInfo(exists=True, timestamp=_peek_timestamp(head), size=size)


def _peek_timestamp(raw: str) -> Optional[str]:
    marker = '"timestamp": "'
    start = raw.find(marker)
    if start < 0:
        return None
    start += len(marker)
    end = raw.find('"', start)
    return raw[start:end] if end > start else None


def create_restore_point(store, dataset: Optional[LocalDataset] = None) -> RestorePoint:
    return RestorePointSlot(store).acquire(dataset)


def get_restore_point_info(store) -> RestorePointInfo:
    return RestorePointSlot(store).info()
