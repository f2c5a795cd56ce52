"""
KeepTruckin ELD adapter

OAuth2 provider. Drivers are listed via /v1/users?role=driver with page_no
pagination; HOS and location reads are keyed by the KeepTruckin driver id.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from ..base_adapter import OAuth2ProviderAdapter
from ..credentials import Credential
from ..domain import (
    Connection,
    DriverHOS,
    DriverLocation,
    DutyStatus,
    EntityType,
    HOSLogEntry,
    ProviderType,
    SyncWindow,
)
from ..errors import ValidationError
from ..events import CanonicalEventType
from ..ports import ProviderWebhook, SyncPage, SyncRecord
from .common import as_float, date_param, parse_timestamp, require_event_type, unwrap

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

DUTY_STATUS_MAP = {
    "driving": DutyStatus.DRIVING,
    "on_duty": DutyStatus.ON_DUTY,
    "off_duty": DutyStatus.OFF_DUTY,
    "sleeper": DutyStatus.SLEEPER_BERTH,
    "sleeper_berth": DutyStatus.SLEEPER_BERTH,
}


class KeepTruckinAdapter(OAuth2ProviderAdapter):
    provider_type = ProviderType.KEEPTRUCKIN
    supported_entity_types = frozenset({EntityType.DRIVERS, EntityType.VEHICLES})
    signature_header = "X-KeepTruckin-Signature"
    webhook_event_map = {
        "token.revoked": CanonicalEventType.CONNECTION_REVOKED,
        "company.deauthorized": CanonicalEventType.CONNECTION_REVOKED,
        "vehicle.location": CanonicalEventType.VEHICLE_LOCATION_UPDATED,
        "driver.location": CanonicalEventType.DRIVER_LOCATION_UPDATED,
        "hos.updated": CanonicalEventType.DRIVER_HOS_UPDATED,
    }

    def test_connection(self, connection: Connection) -> bool:
        self.request(
            "GET",
            f"{self.base_url(connection)}/v1/users/me",
            operation="test_connection",
            credential=self.require_credential(connection),
        )
        return True

    def fetch_account_id(self, credential: Credential) -> Optional[str]:
        body = self.request(
            "GET", f"{self.base_url()}/v1/users/me", operation="profile", credential=credential
        )
        company = (body.get("user") or {}).get("company") or {}
        company_id = company.get("id") or body.get("company_id")
        return str(company_id) if company_id is not None else None

    def get_driver_hos(self, connection: Connection, provider_driver_id: str) -> DriverHOS:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/v1/hos/drivers/{provider_driver_id}",
            operation="driver_hos",
            credential=self.require_credential(connection),
        )
        return self._to_hos(provider_driver_id, unwrap(body, "data", self.provider_type.value))

    def get_driver_hos_logs(
        self,
        connection: Connection,
        provider_driver_id: str,
        start: datetime,
        end: datetime,
    ) -> list[HOSLogEntry]:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/v1/hos/drivers/{provider_driver_id}/logs",
            operation="driver_hos_logs",
            credential=self.require_credential(connection),
            params={"start_date": date_param(start), "end_date": date_param(end)},
        )
        return [
            HOSLogEntry(
                driver_id=provider_driver_id,
                duty_status=DUTY_STATUS_MAP.get(entry.get("duty_status"), DutyStatus.OFF_DUTY),
                start_at=parse_timestamp(entry.get("since") or entry.get("start_time")),
                end_at=parse_timestamp(entry.get("end_time")),
                vehicle_id=entry.get("vehicle_id"),
            )
            for entry in unwrap(body, "data", self.provider_type.value)
        ]

    def get_driver_location(self, connection: Connection, provider_driver_id: str) -> DriverLocation:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/v1/drivers/{provider_driver_id}/location",
            operation="driver_location",
            credential=self.require_credential(connection),
        )
        data = unwrap(body, "data", self.provider_type.value)
        return DriverLocation(
            driver_id=provider_driver_id,
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            heading=as_float(data.get("heading")),
            speed_mph=as_float(data.get("speed")),
            recorded_at=parse_timestamp(data.get("recorded_at")),
        )

    def sync_entity(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> SyncPage:
        if entity_type == EntityType.DRIVERS:
            path, params, envelope, item_key = "/v1/users", {"role": "driver"}, "users", "user"
        elif entity_type == EntityType.VEHICLES:
            path, params, envelope, item_key = "/v1/vehicles", {}, "vehicles", "vehicle"
        else:
            raise ValidationError(
                f"keeptruckin does not sync {entity_type.value}", provider_type=self.provider_type.value
            )

        page_no = int(cursor) if cursor else 1
        body = self.request(
            "GET",
            f"{self.base_url(connection)}{path}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
            params={**params, "page_no": page_no, "per_page": PAGE_SIZE},
        )

        records = []
        for wrapper in body.get(envelope, []):
            item = wrapper.get(item_key, wrapper)
            records.append(SyncRecord(
                external_id=str(item["id"]),
                data=item,
                source_updated_at=parse_timestamp(item.get("updated_at")),
            ))

        pagination = body.get("pagination") or {}
        total = int(pagination.get("total", 0))
        next_cursor = str(page_no + 1) if page_no * PAGE_SIZE < total else None
        # KeepTruckin list endpoints have no modified-since filter.
        return SyncPage(records=records, next_cursor=next_cursor, windowed=False)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        event_type = require_event_type(payload, "action", "event")
        data = payload.get("data") or {}
        entity_id = data.get("vehicle_id") or data.get("driver_id")
        return ProviderWebhook(
            event_type=event_type,
            event_id=payload.get("id"),
            account_id=str(payload["company_id"]) if payload.get("company_id") is not None else None,
            occurred_at=parse_timestamp(payload.get("occurred_at") or data.get("recorded_at")),
            entity_id=str(entity_id) if entity_id is not None else None,
            data=self._translate(event_type, data),
        )

    def _translate(self, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        if event_type == "hos.updated" and data.get("duty_status"):
            status = DUTY_STATUS_MAP.get(data["duty_status"], DutyStatus.OFF_DUTY)
            return {**data, "duty_status": status.value}
        return data

    def _to_hos(self, driver_id: str, data: dict[str, Any]) -> DriverHOS:
        return DriverHOS(
            driver_id=driver_id,
            duty_status=DUTY_STATUS_MAP.get(data.get("duty_status"), DutyStatus.OFF_DUTY),
            drive_remaining_minutes=data.get("driving_minutes_remaining"),
            shift_remaining_minutes=data.get("on_duty_minutes_remaining"),
            cycle_remaining_minutes=data.get("cycle_minutes_remaining"),
            status_changed_at=parse_timestamp(data.get("since")),
            vehicle_id=data.get("vehicle_id"),
        )
