"""Remote write collaborator used to push records to the multi-tenant service."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import requests

from services.errors import RemoteWriteError

LOGGER = logging.getLogger(__name__)

AUTH_HEADER = "x-auth-token"

ENDPOINTS: Dict[str, str] = {
    "add_supplier": "/api/suppliers",
    "add_product_type": "/api/product-types",
    "add_storage_unit": "/api/storage-units",
    "add_delivery_record": "/api/records/delivery",
    "add_storage_record": "/api/records/storage",
    "add_technical_sheet": "/api/technical-sheets",
    "update_establishment_info": "/api/establishment",
}


class RemoteWriter(Protocol):
    """Write operations the migration needs from the remote service.

    Each operation returns the stored remote record or raises
    :class:`RemoteWriteError`.
    """

    def add_supplier(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def add_product_type(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def add_storage_unit(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def add_delivery_record(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def add_storage_record(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def add_technical_sheet(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def update_establishment_info(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        details = payload.get("errors")
        if isinstance(details, list) and details:
            rendered = ", ".join(
                f"{item.get('field')}: {item.get('message')}" if isinstance(item, dict) else str(item)
                for item in details
            )
            message = f"{message or 'Validation failed'} ({rendered})"
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


class HttpRemoteWriter:
    """:class:`RemoteWriter` backed by the service's REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("Content-Type", "application/json")
        if token:
            self.session.headers[AUTH_HEADER] = token

    @classmethod
    def from_settings(cls, settings) -> "HttpRemoteWriter":
        return cls(settings.api_url, settings.api_token, timeout=settings.remote_timeout)

    def _post(self, operation: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{ENDPOINTS[operation]}"
        try:
            response = self.session.post(url, json=dict(record), timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteWriteError(f"Request to {url} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise RemoteWriteError(f"Request to {url} failed: {exc}") from exc

        if not response.ok:
            raise RemoteWriteError(_error_message(response), status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteWriteError(
                f"Invalid JSON response from {url}", status_code=response.status_code
            ) from exc

        if isinstance(payload, dict) and "success" in payload:
            if not payload.get("success"):
                raise RemoteWriteError(_error_message(response), status_code=response.status_code)
            data = payload.get("data")
        else:
            data = payload
        LOGGER.debug("POST %s -> %s", url, response.status_code)
        return data if isinstance(data, dict) else {}

    def add_supplier(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_supplier", record)

    def add_product_type(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_product_type", record)

    def add_storage_unit(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_storage_unit", record)

    def add_delivery_record(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_delivery_record", record)

    def add_storage_record(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_storage_record", record)

    def add_technical_sheet(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("add_technical_sheet", record)

    def update_establishment_info(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return self._post("update_establishment_info", record)


__all__ = ["AUTH_HEADER", "ENDPOINTS", "HttpRemoteWriter", "RemoteWriter"]
