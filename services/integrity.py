"""Count reconciliation between the detected and the migrated dataset."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

from services.dataset import COUNTED_TYPES, MigrationStats
from services.records import get_schema

LOGGER = logging.getLogger(__name__)

StatsLike = Union[MigrationStats, Mapping[str, Any]]


@dataclass
class IntegrityReport:
    ok: bool
    mismatches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "mismatches": list(self.mismatches)}


def _as_stats(value: StatsLike) -> MigrationStats:
    if isinstance(value, MigrationStats):
        return value
    return MigrationStats.from_mapping(value or {})


def check_integrity(before: StatsLike, after: StatsLike) -> IntegrityReport:
    """Compare per-type counts before and after a transfer.

    Fewer migrated records than detected is a mismatch, and so is a surplus,
    which means a record was processed twice.
    """
    expected = _as_stats(before)
    migrated = _as_stats(after)
    mismatches: List[str] = []

    for record_type in COUNTED_TYPES:
        label = get_schema(record_type).label
        wanted = expected.count(record_type)
        got = migrated.count(record_type)
        if got < wanted:
            mismatches.append(
                f"{label}s: expected {wanted}, migrated {got} (missing {wanted - got})"
            )
        elif got > wanted:
            mismatches.append(
                f"{label}s: expected {wanted}, migrated {got} (surplus of {got - wanted})"
            )

    if expected.has_establishment_info and not migrated.has_establishment_info:
        mismatches.append("Establishment profile: expected 1, migrated 0")
    elif migrated.has_establishment_info and not expected.has_establishment_info:
        mismatches.append("Establishment profile: expected 0, migrated 1")

    for message in mismatches:
        LOGGER.warning("Integrity mismatch: %s", message)
    return IntegrityReport(ok=not mismatches, mismatches=mismatches)


__all__ = ["IntegrityReport", "check_integrity"]
