"""
MercuryGate TMS adapter

X-Api-Key header auth. List endpoints page with nextPageToken; status
updates are a PATCH on the load itself.
"""

from typing import Any, Optional

from ..credentials import ApiKeyCredential, Credential
from ..domain import Connection, EntityType, LoadStatus, ProviderType, SyncWindow
from ..ports import SyncPage, SyncRecord
from .common import iso_param, parse_timestamp
from .tms_base import TmsProviderAdapter


class MercuryGateAdapter(TmsProviderAdapter):
    provider_type = ProviderType.MERCURYGATE
    signature_header = "X-MercuryGate-Signature"

    LOAD_STATUS_MAP = {
        LoadStatus.CREATED: "NEW",
        LoadStatus.PENDING: "PENDING",
        LoadStatus.AVAILABLE: "AVAILABLE",
        LoadStatus.ASSIGNED: "ACCEPTED",
        LoadStatus.IN_TRANSIT: "IN_TRANSIT",
        LoadStatus.AT_PICKUP: "AT_PICKUP",
        LoadStatus.LOADED: "PICKED_UP",
        LoadStatus.AT_DROPOFF: "AT_DELIVERY",
        LoadStatus.DELIVERED: "DELIVERED",
        LoadStatus.COMPLETED: "COMPLETED",
        LoadStatus.CANCELLED: "CANCELLED",
        LoadStatus.EXCEPTION: "EXCEPTION",
    }
    DEFAULT_PROVIDER_STATUS = "NEW"

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        if isinstance(credential, ApiKeyCredential):
            return {"X-Api-Key": credential.key}
        return super()._auth_headers(credential)

    def _api_ping(self, base_url: str, credential: ApiKeyCredential) -> None:
        self.request("GET", f"{base_url}/ping", operation="test_connection", credential=credential)

    def _api_sync(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str],
    ) -> SyncPage:
        params = {}
        if cursor:
            params["pageToken"] = cursor
        if window.start:
            params["fromDate"] = iso_param(window.start)
        if window.end:
            params["toDate"] = iso_param(window.end)

        body = self.request(
            "GET",
            f"{self.base_url(connection)}/{entity_type.value}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
            params=params,
        )
        records = []
        for item in body.get("results", []):
            data = item
            if entity_type == EntityType.LOADS and item.get("status"):
                internal = self.from_provider_status(item["status"])
                data = {**item, "provider_status": item["status"], "status": internal.value if internal else item["status"]}
            records.append(SyncRecord(
                external_id=str(item["id"]),
                data=data,
                source_updated_at=parse_timestamp(item.get("lastUpdated")),
            ))
        return SyncPage(records=records, next_cursor=body.get("nextPageToken"), windowed=True)

    def _api_push_load(self, connection: Connection, payload: dict[str, Any]) -> bool:
        self.request(
            "POST",
            f"{self.base_url(connection)}/loads",
            operation="push_load",
            credential=self.require_credential(connection),
            json=payload,
        )
        return True

    def _api_update_status(self, connection: Connection, load_id: str, provider_status: str) -> bool:
        self.request(
            "PATCH",
            f"{self.base_url(connection)}/loads/{load_id}",
            operation="update_load_status",
            credential=self.require_credential(connection),
            json={"status": provider_status},
        )
        return True
