"""
TMW Suite TMS adapter

Bearer API key. Entity pulls use modifiedSince/modifiedBefore and page
numbers; load status values are TMW's own and pass through unchanged.
"""

from typing import Any, Optional

from ..credentials import ApiKeyCredential
from ..domain import Connection, EntityType, ProviderType, SyncWindow
from ..ports import SyncPage, SyncRecord
from .common import iso_param, parse_timestamp
from .tms_base import TmsProviderAdapter

PAGE_SIZE = 500


class TMWAdapter(TmsProviderAdapter):
    provider_type = ProviderType.TMW
    signature_header = "X-TMW-Signature"

    def _api_ping(self, base_url: str, credential: ApiKeyCredential) -> None:
        self.request("GET", f"{base_url}/ping", operation="test_connection", credential=credential)

    def _api_sync(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str],
    ) -> SyncPage:
        page = int(cursor) if cursor else 1
        params = {"page": page, "pageSize": PAGE_SIZE}
        if window.start:
            params["modifiedSince"] = iso_param(window.start)
        if window.end:
            params["modifiedBefore"] = iso_param(window.end)

        body = self.request(
            "GET",
            f"{self.base_url(connection)}/{entity_type.value}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
            params=params,
        )
        items = body.get("items", [])
        records = [
            SyncRecord(
                external_id=str(item["id"]),
                data=item,
                source_updated_at=parse_timestamp(item.get("updatedAt")),
            )
            for item in items
        ]
        total_pages = int(body.get("totalPages", page))
        next_cursor = str(page + 1) if page < total_pages else None
        return SyncPage(records=records, next_cursor=next_cursor, windowed=True)

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
            "PUT",
            f"{self.base_url(connection)}/loads/{load_id}/status",
            operation="update_load_status",
            credential=self.require_credential(connection),
            json={"status": provider_status},
        )
        return True
