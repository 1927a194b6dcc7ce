import json
from datetime import datetime, timezone

from conftest import dump_store, sample_dataset, seed_store
from services.backup import RestorePointSlot, create_backup_artifact, create_restore_point
from services.dataset import (
    COMPLETED_AT_KEY,
    COMPLETED_KEY,
    RESTORE_POINT_KEY,
    read_dataset,
)
from services.records import DATASET_KEYS
from services.rollback import import_from_artifact, restore


def _dataset_values(store):
    return {key: store.get_item(key) for key in DATASET_KEYS}


def test_restore_point_round_trip_is_byte_for_byte(store):
    payload = sample_dataset()
    payload["deliveryRecords"].append({"id": "no-supplier"})
    seed_store(store, payload)
    original = _dataset_values(store)
    create_restore_point(store)

    store.remove_item("deliveryRecords")
    store.set_item("suppliers", "[]")
    store.apply({COMPLETED_KEY: "true", COMPLETED_AT_KEY: "2024-05-01T08:00:00+00:00"})

    assert restore(store) is True

    assert _dataset_values(store) == original
    assert store.get_item(COMPLETED_KEY) is None
    assert store.get_item(COMPLETED_AT_KEY) is None
    assert store.get_item(RESTORE_POINT_KEY) is None


def test_restore_keeps_keys_missing_from_the_snapshot(store):
    seed_store(store, {"suppliers": [{"id": "s1", "name": "Fresh Fish"}]})
    create_restore_point(store)
    product_types = json.dumps([{"id": "p1", "name": "Fish", "optimalTemp": 2}])
    store.set_item("productTypes", product_types)

    assert restore(store) is True

    assert store.get_item("productTypes") == product_types


def test_restore_point_keeps_unreadable_values(store):
    seed_store(store, {"suppliers": [{"id": "s1", "name": "Fresh Fish"}]})
    store.set_item("costings", "{not json")
    create_restore_point(store)
    store.apply({"suppliers": None, "costings": None})

    assert restore(store) is True

    assert store.get_item("costings") == "{not json"
    assert json.loads(store.get_item("suppliers")) == [{"id": "s1", "name": "Fresh Fish"}]


def test_restore_point_restores_compact_json_exactly(store):
    compact = {key: json.dumps(value, separators=(",", ":")) for key, value in sample_dataset().items()}
    store.apply(compact)
    create_restore_point(store)
    store.apply({key: "[]" for key in compact})

    assert restore(store) is True

    assert {key: store.get_item(key) for key in compact} == compact


def test_restore_rejects_backup_with_invalid_records(store):
    seed_store(store, sample_dataset())
    before = dump_store(store)
    payload = {"timestamp": "x", "data": {"deliveryRecords": [{"id": "d1"}]}}

    assert restore(store, payload) is False
    assert restore(store, json.dumps(payload)) is False
    assert dump_store(store) == before


def test_restore_from_backup_artifact(store):
    seed_store(store, sample_dataset())
    artifact = create_backup_artifact(read_dataset(store), now=datetime(2024, 5, 1, tzinfo=timezone.utc))
    store.apply({key: None for key in DATASET_KEYS})

    assert restore(store, artifact.to_bytes()) is True

    assert read_dataset(store).to_dict() == sample_dataset()


def test_restore_without_source_returns_false(store):
    seed_store(store, sample_dataset())
    before = dump_store(store)

    assert restore(store) is False
    assert dump_store(store) == before


def test_restore_with_invalid_payload_leaves_store_untouched(store):
    seed_store(store, sample_dataset())
    before = dump_store(store)

    assert restore(store, b'{"data": {"suppliers": {"id": "s1"}}}') is False
    assert restore(store, b"not json") is False
    assert dump_store(store) == before


def test_import_valid_artifact_takes_a_safety_restore_point(store):
    seed_store(store, {"suppliers": [{"id": "old", "name": "Old supplier"}]})
    store.apply({COMPLETED_KEY: "true", COMPLETED_AT_KEY: "2024-04-01T00:00:00+00:00"})
    raw = json.dumps(
        {
            "timestamp": "2024-05-01T08:00:00+00:00",
            "data": {
                "suppliers": [{"id": "s1", "name": "Fresh Fish"}, {"id": "s2", "name": "Green Farm"}],
                "establishmentInfo": {"name": "Bar Pepe"},
            },
        }
    ).encode("utf-8")

    outcome = import_from_artifact(store, raw)

    assert outcome.success is True
    assert outcome.message == "Data imported successfully. 3 items processed."
    assert outcome.stats.suppliers == 2
    assert outcome.stats.has_establishment_info is True
    assert store.get_item(COMPLETED_KEY) is None
    restore_point = RestorePointSlot(store).load()
    assert restore_point.data == {"suppliers": [{"id": "old", "name": "Old supplier"}]}


def test_import_accepts_legacy_export_and_bare_datasets(store):
    legacy = {"exportDate": "2024-05-01", "version": "1.0", "data": {"technicalSheets": [{"id": "t1", "productName": "Stew"}]}}
    bare = {"productTypes": [{"id": "p1", "name": "Fish", "optimalTemp": 2}]}

    assert import_from_artifact(store, json.dumps(legacy)).success is True
    assert import_from_artifact(store, json.dumps(bare)).success is True

    dataset = read_dataset(store)
    assert dataset.collections["technicalSheets"] == [{"id": "t1", "productName": "Stew"}]
    assert dataset.collections["productTypes"] == [{"id": "p1", "name": "Fish", "optimalTemp": 2}]


def test_import_rejects_invalid_data_before_writing(store):
    seed_store(store, sample_dataset())
    before = dump_store(store)

    outcome = import_from_artifact(store, json.dumps({"data": {"suppliers": [{"id": "s1"}]}}))

    assert outcome.success is False
    assert outcome.message == "Invalid data: Supplier 1: missing name"
    assert dump_store(store) == before


def test_import_rejects_unreadable_files(store):
    outcome = import_from_artifact(store, b"\xff\xfe not json")

    assert outcome.success is False
    assert store.get_item(RESTORE_POINT_KEY) is None
