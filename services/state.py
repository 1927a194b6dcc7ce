"""Persisted migration state for a local store."""
from __future__ import annotations

import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional

from services.dataset import COMPLETED_AT_KEY, COMPLETED_KEY, IN_PROGRESS_KEY
from services.errors import MigrationInProgressError

LOGGER = logging.getLogger(__name__)

SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class MigrationState:
    """Whether the local dataset of a store has already been migrated.

    Loaded once when the wizard starts and written back only at a lifecycle
    boundary: the end of a successful migration, or a rollback.
    """

    completed: bool = False
    completed_at: Optional[str] = None

    @classmethod
    def load(cls, store) -> "MigrationState":
        completed = (store.get_item(COMPLETED_KEY) or "").strip().lower() == "true"
        return cls(completed=completed, completed_at=store.get_item(COMPLETED_AT_KEY) if completed else None)

    @classmethod
    def completed_now(cls, now: Optional[datetime] = None) -> "MigrationState":
        return cls(completed=True, completed_at=(now or datetime.now(timezone.utc)).isoformat())

    @classmethod
    def cleared(cls) -> "MigrationState":
        return cls()

    def store_updates(self) -> Dict[str, Optional[str]]:
        """Key updates that persist this state, for use in a larger transaction."""
        if not self.completed:
            return {COMPLETED_KEY: None, COMPLETED_AT_KEY: None}
        return {COMPLETED_KEY: "true", COMPLETED_AT_KEY: self.completed_at}

    def to_dict(self) -> Dict[str, Any]:
        return {"completed": self.completed, "completedAt": self.completed_at}


def active_operation(store) -> Optional[Dict[str, Any]]:
    """Describe the operation holding the in-progress marker, if any."""
    raw = store.get_item(IN_PROGRESS_KEY)
    if raw is None:
        return None
    try:
        holder = json.loads(raw)
    except json.JSONDecodeError:
        return {"operation": "unknown"}
    return holder if isinstance(holder, dict) else {"operation": "unknown"}


@contextmanager
def exclusive_operation(store, operation: str, *, stale_after: Optional[float] = None) -> Iterator[str]:
    """Hold the store's in-progress marker for the duration of the block.

    The marker lives in the store itself, so a migration started from the
    command line and one started over HTTP exclude each other.  A marker
    older than *stale_after* seconds is treated as left behind by a crashed
    process and taken over.
    """
    marker = json.dumps(
        {
            "token": uuid.uuid4().hex,
            "operation": operation,
            "pid": os.getpid(),
            "startedAt": datetime.now(timezone.utc).isoformat(),
        }
    )
    stale_before = None
    if stale_after:
        stale_before = (datetime.now(timezone.utc) - timedelta(seconds=stale_after)).strftime(
            SQLITE_TIMESTAMP_FORMAT
        )
    if not store.claim(IN_PROGRESS_KEY, marker, stale_before=stale_before):
        holder = active_operation(store) or {}
        raise MigrationInProgressError(
            f"A {holder.get('operation', 'migration')} is already running for this device"
        )
    LOGGER.debug("Claimed in-progress marker for %s", operation)
    try:
        yield marker
    finally:
        store.release_claim(IN_PROGRESS_KEY, marker)


__all__ = ["MigrationState", "active_operation", "exclusive_operation"]
