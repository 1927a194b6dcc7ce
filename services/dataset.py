"""Read the pre-existing dataset out of the local store."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from services.errors import DetectionError
from services.records import (
    DATASET_KEYS,
    PRIMARY_KEYS,
    SECONDARY_KEYS,
    RecordType,
    is_blank,
)

LOGGER = logging.getLogger(__name__)

COMPLETED_KEY = "migrationCompleted"
COMPLETED_AT_KEY = "migrationDate"
RESTORE_POINT_KEY = "migrationRestorePoint"
IN_PROGRESS_KEY = "migrationInProgress"

COUNTED_TYPES: tuple[RecordType, ...] = (
    RecordType.DELIVERY_RECORD,
    RecordType.STORAGE_RECORD,
    RecordType.TECHNICAL_SHEET,
    RecordType.SUPPLIER,
    RecordType.PRODUCT_TYPE,
    RecordType.STORAGE_UNIT,
)


def serialize_value(value: Any) -> str:
    """Serialize a collection the way it is kept in the local store."""
    return json.dumps(value, ensure_ascii=False)


def _is_populated(value: Any) -> bool:
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return value not in (None, "")


def _load_key(store, key: str) -> Any:
    """Return the decoded value of *key* or ``None`` when unusable."""
    raw = store.get_item(key)
    if raw is None or raw.strip() in ("", "null"):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        error = DetectionError(key, str(exc))
        LOGGER.warning("%s; treating it as empty", error)
        return None


@dataclass
class LocalDataset:
    """Mapping from store key to the raw collection held under it."""

    collections: Dict[str, Any] = field(default_factory=dict)

    def records(self, record_type: RecordType | str) -> List[Dict[str, Any]]:
        key = record_type.value if isinstance(record_type, RecordType) else record_type
        value = self.collections.get(key)
        if isinstance(value, list):
            return list(value)
        return []

    @property
    def establishment_info(self) -> Optional[Dict[str, Any]]:
        value = self.collections.get(RecordType.ESTABLISHMENT_INFO.value)
        return value if isinstance(value, dict) else None

    def secondary(self) -> Dict[str, Any]:
        return {key: self.collections[key] for key in SECONDARY_KEYS if key in self.collections}

    def is_empty(self) -> bool:
        return not any(_is_populated(self.collections.get(key)) for key in PRIMARY_KEYS)

    def to_dict(self) -> Dict[str, Any]:
        return {key: self.collections[key] for key in DATASET_KEYS if key in self.collections}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LocalDataset":
        """Keep the recognized keys of *payload*; ``None`` values are dropped."""
        return cls(
            {key: payload[key] for key in DATASET_KEYS if key in payload and payload[key] is not None}
        )


@dataclass
class CleanDataset(LocalDataset):
    """A dataset whose records all passed validation and normalization."""

    rejected: List[str] = field(default_factory=list)


@dataclass
class MigrationStats:
    """Per-type record counts shown on the review screen."""

    delivery_records: int = 0
    storage_records: int = 0
    technical_sheets: int = 0
    suppliers: int = 0
    product_types: int = 0
    storage_units: int = 0
    has_establishment_info: bool = False
    other_records: int = 0

    _ATTRIBUTES = {
        RecordType.DELIVERY_RECORD: "delivery_records",
        RecordType.STORAGE_RECORD: "storage_records",
        RecordType.TECHNICAL_SHEET: "technical_sheets",
        RecordType.SUPPLIER: "suppliers",
        RecordType.PRODUCT_TYPE: "product_types",
        RecordType.STORAGE_UNIT: "storage_units",
    }

    def count(self, record_type: RecordType) -> int:
        return getattr(self, self._ATTRIBUTES[record_type])

    def increment(self, record_type: RecordType) -> None:
        if record_type is RecordType.ESTABLISHMENT_INFO:
            self.has_establishment_info = True
            return
        attribute = self._ATTRIBUTES[record_type]
        setattr(self, attribute, getattr(self, attribute) + 1)

    def total(self) -> int:
        return sum(self.count(record_type) for record_type in COUNTED_TYPES)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deliveryRecords": self.delivery_records,
            "storageRecords": self.storage_records,
            "technicalSheets": self.technical_sheets,
            "suppliers": self.suppliers,
            "productTypes": self.product_types,
            "storageUnits": self.storage_units,
            "hasEstablishmentInfo": self.has_establishment_info,
            "otherRecords": self.other_records,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "MigrationStats":
        """Build stats from a camelCase mapping; establishment may be ``establishmentInfo``."""
        stats = cls()
        for record_type, attribute in cls._ATTRIBUTES.items():
            setattr(stats, attribute, int(payload.get(record_type.value) or 0))
        stats.has_establishment_info = bool(
            payload.get("hasEstablishmentInfo", payload.get(RecordType.ESTABLISHMENT_INFO.value, False))
        )
        stats.other_records = int(payload.get("otherRecords") or 0)
        return stats


def has_migratable_data(store) -> bool:
    """Return ``True`` when any primary record key holds data."""
    return any(_is_populated(_load_key(store, key)) for key in PRIMARY_KEYS)


def snapshot_entries(store) -> Dict[str, str]:
    """Return the stored text of every recognized key that is present."""
    entries: Dict[str, str] = {}
    for key in DATASET_KEYS:
        raw = store.get_item(key)
        if raw is not None:
            entries[key] = raw
    return entries


def read_dataset(store) -> LocalDataset:
    """Read every recognized key from *store*.

    Missing keys are skipped and malformed values are logged and treated as
    empty; the function never raises for bad stored data.
    """
    collections: Dict[str, Any] = {}
    for key in DATASET_KEYS:
        value = _load_key(store, key)
        if value is None:
            continue
        collections[key] = value
    LOGGER.debug("Read %d collections from the local store", len(collections))
    return LocalDataset(collections)


def compute_stats(dataset: LocalDataset) -> MigrationStats:
    stats = MigrationStats()
    for record_type, attribute in MigrationStats._ATTRIBUTES.items():
        setattr(stats, attribute, len(dataset.records(record_type)))
    profile = dataset.establishment_info
    stats.has_establishment_info = bool(profile) and not is_blank(profile.get("name"))
    stats.other_records = sum(
        len(value) for value in dataset.secondary().values() if isinstance(value, list)
    )
    return stats


__all__ = [
    "COMPLETED_AT_KEY",
    "COMPLETED_KEY",
    "COUNTED_TYPES",
    "IN_PROGRESS_KEY",
    "CleanDataset",
    "LocalDataset",
    "MigrationStats",
    "RESTORE_POINT_KEY",
    "compute_stats",
    "has_migratable_data",
    "read_dataset",
    "serialize_value",
    "snapshot_entries",
]
