from datetime import datetime

from conftest import sample_dataset
from services.dataset import LocalDataset
from services.records import RecordType, get_schema
from services.validation import establishment_is_migratable, prepare, validate

NOW = datetime(2024, 5, 1, 10, 30)


def test_valid_dataset_passes():
    report = validate(LocalDataset.from_dict(sample_dataset()))

    assert report.valid is True
    assert report.errors == []


def test_all_violations_are_reported():
    dataset = LocalDataset.from_dict(
        {
            "suppliers": [{"id": "s1"}, {"id": "s2", "name": "Green Farm"}],
            "deliveryRecords": [
                {"id": "d1", "supplierId": "s2", "productTypeId": "p1"},
                {"id": "d2", "supplierId": "s2"},
            ],
            "storageRecords": [{"id": "r1", "unitId": "u1", "temperature": 0}],
        }
    )

    report = validate(dataset)

    assert report.valid is False
    assert report.errors == [
        "Supplier 1: missing name",
        "Delivery record 2: missing productTypeId",
    ]


def test_legacy_field_names_satisfy_required_fields():
    dataset = LocalDataset.from_dict(
        {"deliveryRecords": [{"id": "d1", "supplier": "s1", "productType": "p1"}]}
    )

    assert validate(dataset).valid is True


def test_wrong_collection_shapes_are_reported():
    dataset = LocalDataset.from_dict({"suppliers": {"id": "s1"}, "establishmentInfo": ["Bar"]})

    report = validate(dataset)

    assert "Suppliers: expected a list, got dict" in report.errors
    assert "Establishment profile: expected an object, got list" in report.errors


def test_prepare_drops_invalid_records_and_applies_defaults():
    dataset = LocalDataset.from_dict(
        {
            "deliveryRecords": [
                {"id": "d1", "supplier": "s1", "productType": "p1", "temperature": "3,5"},
                {"id": "d2", "supplierId": "s1"},
            ],
            "storageRecords": [{"id": "r1", "unitId": "u1", "temperature": "4"}],
            "users": [{"id": "user-1"}],
        }
    )

    clean = prepare(dataset, now=NOW, timezone="Europe/Madrid")

    assert clean.records(RecordType.DELIVERY_RECORD) == [
        {
            "id": "d1",
            "supplierId": "s1",
            "productTypeId": "p1",
            "receptionDate": "2024-05-01",
            "temperature": 3.5,
            "docsOk": True,
            "userId": "migrated-user",
        }
    ]
    storage = clean.records(RecordType.STORAGE_RECORD)[0]
    assert storage["temperature"] == 4
    assert storage["dateTime"] == "2024-05-01T10:30:00+02:00"
    assert storage["rotationCheck"] is False
    assert clean.collections["users"] == [{"id": "user-1"}]
    assert clean.rejected == []


def test_prepare_is_deterministic_for_a_fixed_clock():
    dataset = LocalDataset.from_dict(sample_dataset())

    first = prepare(dataset, now=NOW, timezone="Europe/Madrid")
    second = prepare(dataset, now=NOW, timezone="Europe/Madrid")

    assert first.to_dict() == second.to_dict()


def test_prepared_records_satisfy_required_fields():
    payload = sample_dataset()
    payload["deliveryRecords"].append({"id": "bad"})
    payload["suppliers"].append({"name": "No id"})

    clean = prepare(LocalDataset.from_dict(payload), now=NOW)

    for record_type in RecordType:
        if not record_type.is_collection:
            continue
        schema = get_schema(record_type)
        for record in clean.records(record_type):
            assert schema.missing_required(record) == []
    assert len(clean.records(RecordType.DELIVERY_RECORD)) == 5
    assert len(clean.records(RecordType.SUPPLIER)) == 2


def test_uncoercible_values_are_rejected_with_a_message():
    dataset = LocalDataset.from_dict(
        {"storageRecords": [{"id": "r1", "unitId": "u1", "temperature": "warm"}]}
    )

    clean = prepare(dataset, now=NOW)

    assert clean.records(RecordType.STORAGE_RECORD) == []
    assert len(clean.rejected) == 1
    assert clean.rejected[0].startswith("Storage record 1: dropped (temperature:")


def test_establishment_needs_a_name_to_migrate():
    assert establishment_is_migratable(LocalDataset.from_dict({"establishmentInfo": {"name": "Bar"}}))
    assert not establishment_is_migratable(LocalDataset.from_dict({"establishmentInfo": {"city": "Vigo"}}))
