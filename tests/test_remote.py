import pytest
import requests

from services.errors import RemoteWriteError
from services.records import RecordType, build_dispatch_table
from services.remote import AUTH_HEADER, HttpRemoteWriter

_INVALID_JSON = object()


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is _INVALID_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.requests = []
        self.response = response
        self.error = error

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def _writer(session):
    return HttpRemoteWriter("http://api.test/", "secret", timeout=5.0, session=session)


def test_posts_record_and_returns_remote_data():
    session = FakeSession(FakeResponse(201, {"success": True, "data": {"id": "abc", "name": "Fresh Fish"}}))

    remote = _writer(session).add_supplier({"name": "Fresh Fish"})

    assert remote == {"id": "abc", "name": "Fresh Fish"}
    assert session.requests == [("http://api.test/api/suppliers", {"name": "Fresh Fish"}, 5.0)]
    assert session.headers[AUTH_HEADER] == "secret"


def test_every_operation_targets_its_endpoint():
    session = FakeSession(FakeResponse(200, {"success": True, "data": {}}))
    writer = _writer(session)

    for operation in build_dispatch_table(writer).values():
        operation({})

    assert [url for url, _, _ in session.requests] == [
        "http://api.test/api/suppliers",
        "http://api.test/api/product-types",
        "http://api.test/api/storage-units",
        "http://api.test/api/records/delivery",
        "http://api.test/api/records/storage",
        "http://api.test/api/technical-sheets",
        "http://api.test/api/establishment",
    ]


def test_validation_errors_are_reported_with_status():
    payload = {"success": False, "message": "Validation failed", "errors": [{"field": "name", "message": "required"}]}
    writer = _writer(FakeSession(FakeResponse(400, payload)))

    with pytest.raises(RemoteWriteError) as excinfo:
        writer.add_supplier({})

    assert str(excinfo.value) == "Validation failed (name: required)"
    assert excinfo.value.status_code == 400


def test_unsuccessful_envelope_is_an_error():
    writer = _writer(FakeSession(FakeResponse(200, {"success": False, "message": "Supplier not found"})))

    with pytest.raises(RemoteWriteError, match="Supplier not found"):
        writer.add_delivery_record({"supplierId": "ghost"})


def test_timeout_is_a_remote_write_error():
    writer = _writer(FakeSession(error=requests.Timeout("slow")))

    with pytest.raises(RemoteWriteError, match="timed out"):
        writer.add_storage_record({})


def test_connection_failure_is_a_remote_write_error():
    writer = _writer(FakeSession(error=requests.ConnectionError("refused")))

    with pytest.raises(RemoteWriteError, match="failed"):
        writer.add_technical_sheet({})


def test_invalid_json_is_a_remote_write_error():
    writer = _writer(FakeSession(FakeResponse(200, _INVALID_JSON)))

    with pytest.raises(RemoteWriteError, match="Invalid JSON"):
        writer.update_establishment_info({"name": "Bar"})


def test_dispatch_table_requires_every_operation():
    class PartialWriter:
        def add_supplier(self, record):
            return {}

    with pytest.raises(TypeError, match="add_product_type"):
        build_dispatch_table(PartialWriter())


def test_dispatch_table_covers_every_record_type():
    table = build_dispatch_table(_writer(FakeSession()))

    assert set(table) == set(RecordType)
