from __future__ import annotations

import itertools
import json
from typing import Any, Callable, Dict, List, Mapping, Tuple

import pytest

from database import LocalStore
from services.backup import RestorePointSlot
from services.errors import RemoteWriteError


class FakeWriter:
    """In-memory remote writer that records every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, Callable[[Mapping[str, Any]], bool]] = {}
        self.hooks: Dict[str, Callable[[Mapping[str, Any]], None]] = {}
        self._ids = itertools.count(1)

    def operations(self) -> List[str]:
        return [operation for operation, _ in self.calls]

    def payloads(self, operation: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.calls if name == operation]

    def _write(self, operation: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        self.calls.append((operation, dict(record)))
        hook = self.hooks.get(operation)
        if hook is not None:
            hook(record)
        should_fail = self.failures.get(operation)
        if should_fail is not None and should_fail(record):
            raise RemoteWriteError("rejected by remote", status_code=400)
        return {"id": f"remote-{next(self._ids)}", **record}

    def add_supplier(self, record):
        return self._write("add_supplier", record)

    def add_product_type(self, record):
        return self._write("add_product_type", record)

    def add_storage_unit(self, record):
        return self._write("add_storage_unit", record)

    def add_delivery_record(self, record):
        return self._write("add_delivery_record", record)

    def add_storage_record(self, record):
        return self._write("add_storage_record", record)

    def add_technical_sheet(self, record):
        return self._write("add_technical_sheet", record)

    def update_establishment_info(self, record):
        return self._write("update_establishment_info", record)


def sample_dataset() -> Dict[str, Any]:
    return {
        "suppliers": [
            {"id": "s1", "name": "Fresh Fish"},
            {"id": "s2", "name": "Green Farm"},
        ],
        "productTypes": [{"id": "p1", "name": "Fish", "optimalTemp": 2}],
        "storageUnits": [
            {"id": "u1", "name": "Cold room", "type": "refrigerator", "minTemp": 0, "maxTemp": 4}
        ],
        "deliveryRecords": [
            {
                "id": f"d{index}",
                "supplierId": "s1",
                "productTypeId": "p1",
                "receptionDate": "2024-04-2%d" % index,
                "temperature": index,
                "docsOk": True,
                "userId": "user-1",
            }
            for index in range(1, 6)
        ],
        "storageRecords": [
            {"id": "r1", "unitId": "u1", "temperature": 3.2, "dateTime": "2024-04-30T09:00:00"}
        ],
        "technicalSheets": [{"id": "t1", "productName": "Fish stew", "allergens": ["fish"]}],
        "establishmentInfo": {"name": "Bar Pepe", "city": "Vigo"},
        "users": [{"id": "user-1", "name": "Ana"}],
    }


def seed_store(store: LocalStore, dataset: Mapping[str, Any]) -> None:
    store.apply({key: json.dumps(value, ensure_ascii=False) for key, value in dataset.items()})


def dump_store(store: LocalStore) -> Dict[str, str]:
    return {key: store.get_item(key) for key in store.keys()}


@pytest.fixture()
def store(tmp_path):
    local_store = LocalStore(tmp_path / "store.db")
    try:
        yield local_store
    finally:
        RestorePointSlot(local_store).cancel_scheduled_release()


@pytest.fixture()
def writer():
    return FakeWriter()
