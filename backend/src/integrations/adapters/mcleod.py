"""
McLeod TMS adapter

API-key access to the McLeod LoadMaster REST API. Entity pulls are windowed
with modified_since / modified_before and paged by offset.
"""

from typing import Any, Optional

from ..credentials import ApiKeyCredential, Credential
from ..domain import Connection, EntityType, LoadStatus, ProviderType, SyncWindow
from ..ports import SyncPage, SyncRecord
from .common import iso_param, parse_timestamp
from .tms_base import TmsProviderAdapter

PAGE_LIMIT = 1000


class McLeodAdapter(TmsProviderAdapter):
    provider_type = ProviderType.MCLEOD
    signature_header = "X-McLeod-Signature"

    LOAD_STATUS_MAP = {
        LoadStatus.AVAILABLE: "AVAILABLE",
        LoadStatus.ASSIGNED: "BOOKED",
        LoadStatus.IN_TRANSIT: "IN_TRANSIT",
        LoadStatus.AT_PICKUP: "AT_PICKUP",
        LoadStatus.LOADED: "PICKED_UP",
        LoadStatus.AT_DROPOFF: "AT_DELIVERY",
        LoadStatus.DELIVERED: "DELIVERED",
        LoadStatus.COMPLETED: "COMPLETED",
        LoadStatus.CANCELLED: "CANCELLED",
        LoadStatus.DELAYED: "DELAYED",
        LoadStatus.EXCEPTION: "EXCEPTION",
    }
    DEFAULT_PROVIDER_STATUS = "CREATED"

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        if isinstance(credential, ApiKeyCredential):
            headers = {"X-API-Key": credential.key}
            if credential.secret:
                headers["X-API-Secret"] = credential.secret
            return headers
        return super()._auth_headers(credential)

    def _api_ping(self, base_url: str, credential: ApiKeyCredential) -> None:
        self.request("GET", f"{base_url}/api/v1/ping", operation="test_connection", credential=credential)

    def _api_sync(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str],
    ) -> SyncPage:
        offset = int(cursor) if cursor else 0
        params = {"limit": PAGE_LIMIT, "offset": offset}
        if connection.settings.get("company_code"):
            params["company_code"] = connection.settings["company_code"]
        if window.start:
            params["modified_since"] = iso_param(window.start)
        if window.end:
            params["modified_before"] = iso_param(window.end)

        body = self.request(
            "GET",
            f"{self.base_url(connection)}/api/v1/{entity_type.value}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
            params=params,
        )
        items = body.get("data", []) if isinstance(body, dict) else body
        records = [
            SyncRecord(
                external_id=str(item["id"]),
                data=self._normalize(entity_type, item),
                source_updated_at=parse_timestamp(item.get("modified_date")),
            )
            for item in items
        ]
        next_cursor = str(offset + PAGE_LIMIT) if len(items) >= PAGE_LIMIT else None
        return SyncPage(records=records, next_cursor=next_cursor, windowed=True)

    def _normalize(self, entity_type: EntityType, item: dict[str, Any]) -> dict[str, Any]:
        if entity_type == EntityType.LOADS and item.get("status"):
            internal = self.from_provider_status(item["status"])
            return {**item, "provider_status": item["status"], "status": internal.value if internal else item["status"]}
        return item

    def _api_push_load(self, connection: Connection, payload: dict[str, Any]) -> bool:
        if connection.settings.get("company_code"):
            payload = {**payload, "company_code": connection.settings["company_code"]}
        self.request(
            "POST",
            f"{self.base_url(connection)}/api/v1/loads",
            operation="push_load",
            credential=self.require_credential(connection),
            json=payload,
        )
        return True

    def _api_update_status(self, connection: Connection, load_id: str, provider_status: str) -> bool:
        self.request(
            "PATCH",
            f"{self.base_url(connection)}/api/v1/loads/{load_id}/status",
            operation="update_load_status",
            credential=self.require_credential(connection),
            json={"status": provider_status},
        )
        return True
