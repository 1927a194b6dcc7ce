"""Schema-driven definitions for the record types held in the local store."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from dateutil.parser import ParserError
from dateutil.parser import parse as dateutil_parse

INTEGER_PATTERN = re.compile(r"[+-]?\d+")
MIGRATED_USER_ID = "migrated-user"


class RecordValidationError(Exception):
    """Raised when record validation fails."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Record validation failed")
        self.errors = errors


class RecordType(str, Enum):
    """Primary record types, valued by their local store key."""

    SUPPLIER = "suppliers"
    PRODUCT_TYPE = "productTypes"
    STORAGE_UNIT = "storageUnits"
    DELIVERY_RECORD = "deliveryRecords"
    STORAGE_RECORD = "storageRecords"
    TECHNICAL_SHEET = "technicalSheets"
    ESTABLISHMENT_INFO = "establishmentInfo"

    @property
    def is_collection(self) -> bool:
        return self is not RecordType.ESTABLISHMENT_INFO


# Referenced-by types first, referencing types next, the profile last.
TRANSFER_ORDER: tuple[RecordType, ...] = (
    RecordType.SUPPLIER,
    RecordType.PRODUCT_TYPE,
    RecordType.STORAGE_UNIT,
    RecordType.DELIVERY_RECORD,
    RecordType.STORAGE_RECORD,
    RecordType.TECHNICAL_SHEET,
    RecordType.ESTABLISHMENT_INFO,
)

SECONDARY_KEYS: tuple[str, ...] = (
    "users",
    "dailySurfaces",
    "dailyCleaningRecords",
    "frequentAreas",
    "costings",
    "outgoingRecords",
    "elaboratedRecords",
)

PRIMARY_KEYS: tuple[str, ...] = tuple(record_type.value for record_type in TRANSFER_ORDER)
DATASET_KEYS: tuple[str, ...] = PRIMARY_KEYS + SECONDARY_KEYS


def is_blank(value: Any) -> bool:
    """Return ``True`` for values that do not satisfy a required field."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def parse_number(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"expected a finite number, got {value!r}")
        return value
    text = str(value).strip().replace(",", ".")
    if not text:
        raise ValueError("expected a number, got an empty string")
    number = float(text)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"expected a finite number, got {value!r}")
    if INTEGER_PATTERN.fullmatch(text):
        return int(text)
    return number


def _as_datetime(value: Any, tzinfo) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = dateutil_parse(str(value))
        except (ParserError, ValueError, TypeError, OverflowError) as exc:
            raise ValueError(f"unrecognised timestamp {value!r}") from exc
    if parsed.tzinfo is None and tzinfo is not None:
        parsed = tzinfo.localize(parsed) if hasattr(tzinfo, "localize") else parsed.replace(tzinfo=tzinfo)
    return parsed


@dataclass
class FieldDefinition:
    """Represents a single field inside a record schema."""

    name: str
    field_type: str = "string"
    required: bool = False
    default: Any = None
    aliases: Sequence[str] = ()
    description: str = ""

    def lookup(self, payload: Mapping[str, Any]) -> Any:
        """Return the field value, falling back to legacy aliases."""
        value = payload.get(self.name)
        if not is_blank(value):
            return value
        for alias in self.aliases:
            candidate = payload.get(alias)
            if not is_blank(candidate):
                return candidate
        return value

    def resolve_default(self, now: datetime) -> Any:
        if callable(self.default):
            return self.default(now)
        if isinstance(self.default, (list, dict)):
            return type(self.default)(self.default)
        return self.default

    def clean(self, value: Any, tzinfo=None) -> Any:
        """Normalise input data for this field."""
        if value is None:
            return None
        if self.field_type in {"string", "text", "reference"}:
            return str(value).strip()
        if self.field_type == "number":
            return parse_number(value)
        if self.field_type == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)):
                return bool(value)
            if isinstance(value, str):
                return value.strip().lower() in {"true", "1", "yes", "y", "si", "sí"}
            return bool(value)
        if self.field_type == "timestamp":
            return _as_datetime(value, tzinfo).isoformat()
        if self.field_type == "date":
            return _as_datetime(value, tzinfo).date().isoformat()
        if self.field_type == "list":
            if isinstance(value, (list, tuple)):
                return list(value)
            raise ValueError(f"expected a list, got {type(value).__name__}")
        if self.field_type == "object":
            if isinstance(value, dict):
                return dict(value)
            raise ValueError(f"expected an object, got {type(value).__name__}")
        return value


def _today(now: datetime) -> str:
    return now.date().isoformat()


def _now(now: datetime) -> str:
    return now.isoformat()


@dataclass
class RecordSchema:
    """Describes one migratable record type and how it reaches the remote service."""

    record_type: RecordType
    label: str
    fields: Dict[str, FieldDefinition]
    remote_operation: str
    remote_fields: Sequence[str] = ()
    references: Dict[str, RecordType] = field(default_factory=dict)
    display_field: Optional[str] = None
    keep_extra_fields: bool = True

    @property
    def key(self) -> str:
        return self.record_type.value

    def missing_required(self, payload: Mapping[str, Any]) -> List[str]:
        return [
            name
            for name, definition in self.fields.items()
            if definition.required and is_blank(definition.lookup(payload))
        ]

    def normalise(self, payload: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
        """Return a canonical copy of *payload*.

        Raises :class:`RecordValidationError` listing every field that is
        missing or could not be coerced.
        """
        errors: Dict[str, str] = {}
        alias_names = {alias for definition in self.fields.values() for alias in definition.aliases}
        normalised: Dict[str, Any] = {}
        if self.keep_extra_fields:
            normalised.update(
                (name, value)
                for name, value in payload.items()
                if name not in self.fields and name not in alias_names
            )
        for name, definition in self.fields.items():
            incoming = definition.lookup(payload)
            if is_blank(incoming):
                if definition.required:
                    errors[name] = "Field is required"
                    continue
                default_value = definition.resolve_default(now)
                if default_value is None:
                    if name in payload:
                        normalised[name] = None
                    continue
                incoming = default_value
            try:
                normalised[name] = definition.clean(incoming, now.tzinfo)
            except (ValueError, TypeError) as exc:
                errors[name] = str(exc)
        if errors:
            raise RecordValidationError(errors)
        return normalised

    def remote_payload(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        fields = self.remote_fields or [name for name in record if name != "id"]
        return {name: record[name] for name in fields if name in record and record[name] is not None}

    def describe(self, record: Mapping[str, Any]) -> str:
        if self.display_field and not is_blank(record.get(self.display_field)):
            return str(record[self.display_field]).strip()
        if not is_blank(record.get("id")):
            return str(record["id"])
        return self.label.lower()


SCHEMAS: Dict[RecordType, RecordSchema] = {
    RecordType.SUPPLIER: RecordSchema(
        record_type=RecordType.SUPPLIER,
        label="Supplier",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "name": FieldDefinition("name", "string", required=True),
        },
        remote_operation="add_supplier",
        remote_fields=("name",),
        display_field="name",
        keep_extra_fields=False,
    ),
    RecordType.PRODUCT_TYPE: RecordSchema(
        record_type=RecordType.PRODUCT_TYPE,
        label="Product type",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "name": FieldDefinition("name", "string", required=True),
            "optimalTemp": FieldDefinition("optimalTemp", "number", required=True),
        },
        remote_operation="add_product_type",
        remote_fields=("name", "optimalTemp"),
        display_field="name",
        keep_extra_fields=False,
    ),
    RecordType.STORAGE_UNIT: RecordSchema(
        record_type=RecordType.STORAGE_UNIT,
        label="Storage unit",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "name": FieldDefinition("name", "string", required=True),
            "type": FieldDefinition("type", "string"),
            "minTemp": FieldDefinition("minTemp", "number"),
            "maxTemp": FieldDefinition("maxTemp", "number"),
        },
        remote_operation="add_storage_unit",
        remote_fields=("name", "type", "minTemp", "maxTemp"),
        display_field="name",
    ),
    RecordType.DELIVERY_RECORD: RecordSchema(
        record_type=RecordType.DELIVERY_RECORD,
        label="Delivery record",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "supplierId": FieldDefinition("supplierId", "reference", required=True, aliases=("supplier",)),
            "productTypeId": FieldDefinition(
                "productTypeId", "reference", required=True, aliases=("productType",)
            ),
            "receptionDate": FieldDefinition("receptionDate", "date", default=_today),
            "temperature": FieldDefinition("temperature", "number", default=0),
            "docsOk": FieldDefinition("docsOk", "boolean", default=True, aliases=("documentsOk",)),
            "userId": FieldDefinition("userId", "string", default=MIGRATED_USER_ID),
            "albaranImage": FieldDefinition("albaranImage", "string"),
        },
        remote_operation="add_delivery_record",
        remote_fields=(
            "supplierId",
            "productTypeId",
            "receptionDate",
            "temperature",
            "docsOk",
            "albaranImage",
        ),
        references={"supplierId": RecordType.SUPPLIER, "productTypeId": RecordType.PRODUCT_TYPE},
    ),
    RecordType.STORAGE_RECORD: RecordSchema(
        record_type=RecordType.STORAGE_RECORD,
        label="Storage record",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "unitId": FieldDefinition("unitId", "reference", required=True),
            "temperature": FieldDefinition("temperature", "number", required=True),
            "dateTime": FieldDefinition("dateTime", "timestamp", default=_now),
            "humidity": FieldDefinition("humidity", "number"),
            "rotationCheck": FieldDefinition("rotationCheck", "boolean", default=False),
            "mincingCheck": FieldDefinition("mincingCheck", "boolean", default=False),
            "userId": FieldDefinition("userId", "string", default=MIGRATED_USER_ID),
        },
        remote_operation="add_storage_record",
        remote_fields=("unitId", "temperature", "dateTime", "humidity", "rotationCheck", "mincingCheck"),
        references={"unitId": RecordType.STORAGE_UNIT},
    ),
    RecordType.TECHNICAL_SHEET: RecordSchema(
        record_type=RecordType.TECHNICAL_SHEET,
        label="Technical sheet",
        fields={
            "id": FieldDefinition("id", "string", required=True),
            "productName": FieldDefinition("productName", "string", required=True),
            "ingredients": FieldDefinition("ingredients", "list", default=[]),
            "allergens": FieldDefinition("allergens", "list", default=[]),
            "elaboration": FieldDefinition("elaboration", "text", default=""),
            "presentation": FieldDefinition("presentation", "text", default=""),
            "shelfLife": FieldDefinition("shelfLife", "text", default=""),
            "labeling": FieldDefinition("labeling", "text", default=""),
            "storageConditions": FieldDefinition("storageConditions", "text", default=""),
            "nutritionalInfo": FieldDefinition("nutritionalInfo", "object", default={}),
        },
        remote_operation="add_technical_sheet",
        remote_fields=(
            "productName",
            "ingredients",
            "allergens",
            "elaboration",
            "presentation",
            "shelfLife",
            "labeling",
            "storageConditions",
            "nutritionalInfo",
        ),
        display_field="productName",
    ),
    RecordType.ESTABLISHMENT_INFO: RecordSchema(
        record_type=RecordType.ESTABLISHMENT_INFO,
        label="Establishment profile",
        fields={
            name: FieldDefinition(name, "string", default="")
            for name in (
                "name",
                "address",
                "city",
                "postalCode",
                "sanitaryRegistry",
                "phone",
                "email",
                "manager",
                "activityType",
                "registrationNumber",
            )
        },
        remote_operation="update_establishment_info",
        display_field="name",
        keep_extra_fields=False,
    ),
}


def get_schema(record_type: RecordType) -> RecordSchema:
    return SCHEMAS[RecordType(record_type)]


def iter_schemas() -> Iterable[RecordSchema]:
    """Yield schemas in transfer order."""
    for record_type in TRANSFER_ORDER:
        yield SCHEMAS[record_type]


def build_dispatch_table(writer: Any) -> Dict[RecordType, Callable[[Dict[str, Any]], Any]]:
    """Map every record type to the writer operation that transfers it."""
    table: Dict[RecordType, Callable[[Dict[str, Any]], Any]] = {}
    for schema in iter_schemas():
        operation = getattr(writer, schema.remote_operation, None)
        if not callable(operation):
            raise TypeError(
                f"Remote writer {type(writer).__name__} does not provide '{schema.remote_operation}'"
            )
        table[schema.record_type] = operation
    return table


__all__ = [
    "DATASET_KEYS",
    "FieldDefinition",
    "MIGRATED_USER_ID",
    "PRIMARY_KEYS",
    "RecordSchema",
    "RecordType",
    "RecordValidationError",
    "SCHEMAS",
    "SECONDARY_KEYS",
    "TRANSFER_ORDER",
    "build_dispatch_table",
    "get_schema",
    "is_blank",
    "iter_schemas",
    "parse_number",
]
