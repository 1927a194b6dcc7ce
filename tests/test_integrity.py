from services.dataset import MigrationStats
from services.integrity import check_integrity


def _stats(**overrides):
    values = dict(
        delivery_records=5,
        storage_records=1,
        technical_sheets=1,
        suppliers=2,
        product_types=1,
        storage_units=0,
        has_establishment_info=True,
    )
    values.update(overrides)
    return MigrationStats(**values)


def test_matching_counts_are_ok():
    report = check_integrity(_stats(), _stats())

    assert report.ok is True
    assert report.mismatches == []


def test_missing_records_are_reported_per_type():
    report = check_integrity(_stats(), _stats(delivery_records=4))

    assert report.ok is False
    assert report.mismatches == ["Delivery records: expected 5, migrated 4 (missing 1)"]


def test_surplus_is_flagged_as_double_processing():
    report = check_integrity(_stats(), _stats(suppliers=3))

    assert report.mismatches == ["Suppliers: expected 2, migrated 3 (surplus of 1)"]


def test_missing_establishment_profile_is_a_mismatch():
    report = check_integrity(_stats(), _stats(has_establishment_info=False))

    assert report.mismatches == ["Establishment profile: expected 1, migrated 0"]


def test_other_records_are_not_reconciled():
    report = check_integrity(_stats(other_records=7), _stats())

    assert report.ok is True


def test_plain_mappings_are_accepted():
    report = check_integrity({"suppliers": 2, "productTypes": 1}, {"suppliers": 2, "productTypes": 0})

    assert report.to_dict() == {
        "ok": False,
        "mismatches": ["Product types: expected 1, migrated 0 (missing 1)"],
    }
