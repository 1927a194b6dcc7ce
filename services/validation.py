"""Structural validation and normalization of a local dataset."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz

from services.dataset import CleanDataset, LocalDataset
from services.errors import ValidationError
from services.records import (
    RecordSchema,
    RecordType,
    RecordValidationError,
    is_blank,
    iter_schemas,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _record_errors(schema: RecordSchema, index: int, record: Any) -> List[str]:
    prefix = f"{schema.label} {index + 1}"
    if not isinstance(record, dict):
        return [f"{prefix}: expected an object, got {type(record).__name__}"]
    missing = schema.missing_required(record)
    if not missing:
        return []
    return [f"{prefix}: missing {', '.join(missing)}"]


def validate(dataset: LocalDataset) -> ValidationReport:
    """Check every record of every primary type against its required fields.

    All violations are reported, not just the first one.  The function never
    raises.
    """
    errors: List[str] = []
    for schema in iter_schemas():
        value = dataset.collections.get(schema.key)
        if value is None:
            continue
        if schema.record_type is RecordType.ESTABLISHMENT_INFO:
            if not isinstance(value, dict):
                errors.append(f"{schema.label}: expected an object, got {type(value).__name__}")
            continue
        if not isinstance(value, list):
            errors.append(f"{schema.label}s: expected a list, got {type(value).__name__}")
            continue
        for index, record in enumerate(value):
            errors.extend(_record_errors(schema, index, record))
    if errors:
        LOGGER.warning("%s", ValidationError(f"{len(errors)} validation problems in the local dataset"))
    return ValidationReport(valid=not errors, errors=errors)


def _resolve_now(now: Optional[datetime], timezone: str) -> datetime:
    tz = pytz.timezone(timezone)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return tz.localize(now)
    return now.astimezone(tz)


def _format_rejection(schema: RecordSchema, index: int, errors: Dict[str, str]) -> str:
    details = "; ".join(f"{name}: {message}" for name, message in sorted(errors.items()))
    return f"{schema.label} {index + 1}: dropped ({details})"


def _prepare_collection(
    schema: RecordSchema, value: Any, now: datetime, rejected: List[str]
) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    cleaned: List[Dict[str, Any]] = []
    for index, record in enumerate(value):
        if _record_errors(schema, index, record):
            continue
        try:
            cleaned.append(schema.normalise(record, now))
        except RecordValidationError as exc:
            message = _format_rejection(schema, index, exc.errors)
            LOGGER.warning(message)
            rejected.append(message)
    return cleaned


def prepare(
    dataset: LocalDataset,
    *,
    now: Optional[datetime] = None,
    timezone: str = "UTC",
) -> CleanDataset:
    """Produce a canonical copy of *dataset* ready for transfer.

    Records failing validation are filtered out, defaults are applied and
    numeric and timestamp fields are coerced.  Records whose values cannot be
    coerced are dropped and listed in ``CleanDataset.rejected``.  Given the
    same ``now`` the output is always the same.
    """
    moment = _resolve_now(now, timezone)
    rejected: List[str] = []
    collections: Dict[str, Any] = {}
    for schema in iter_schemas():
        value = dataset.collections.get(schema.key)
        if value is None:
            continue
        if schema.record_type is RecordType.ESTABLISHMENT_INFO:
            if isinstance(value, dict):
                collections[schema.key] = schema.normalise(value, moment)
            continue
        collections[schema.key] = _prepare_collection(schema, value, moment, rejected)

    collections.update(dataset.secondary())
    return CleanDataset(collections=collections, rejected=rejected)


def establishment_is_migratable(dataset: LocalDataset) -> bool:
    profile = dataset.establishment_info
    return bool(profile) and not is_blank(profile.get("name"))


__all__ = [
    "ValidationReport",
    "establishment_is_migratable",
    "prepare",
    "validate",
]
