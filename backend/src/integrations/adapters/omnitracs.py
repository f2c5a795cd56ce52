"""
Omnitracs ELD adapter

OAuth2 provider. Duty status codes are single tokens (D, ON, OFF, SB);
unknown codes are reported as OFF_DUTY.
"""

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
from .common import as_float, as_int, date_param, parse_timestamp, require_event_type

DUTY_STATUS_MAP = {
    "D": DutyStatus.DRIVING,
    "ON": DutyStatus.ON_DUTY,
    "OFF": DutyStatus.OFF_DUTY,
    "SB": DutyStatus.SLEEPER_BERTH,
}

ENTITY_PATHS = {
    EntityType.DRIVERS: "/drivers",
    EntityType.VEHICLES: "/vehicles",
}


def map_duty_status(code: Optional[str]) -> DutyStatus:
    return DUTY_STATUS_MAP.get((code or "").upper(), DutyStatus.OFF_DUTY)


class OmnitracsAdapter(OAuth2ProviderAdapter):
    provider_type = ProviderType.OMNITRACS
    supported_entity_types = frozenset(ENTITY_PATHS)
    signature_header = "X-Omnitracs-Signature"
    webhook_event_map = {
        "subscription.cancelled": CanonicalEventType.CONNECTION_REVOKED,
        "authorization.revoked": CanonicalEventType.CONNECTION_REVOKED,
        "position.update": CanonicalEventType.VEHICLE_LOCATION_UPDATED,
        "driver.position": CanonicalEventType.DRIVER_LOCATION_UPDATED,
        "hos.status": CanonicalEventType.DRIVER_HOS_UPDATED,
    }

    def test_connection(self, connection: Connection) -> bool:
        self.request(
            "GET",
            f"{self.base_url(connection)}/user/profile",
            operation="test_connection",
            credential=self.require_credential(connection),
        )
        return True

    def fetch_account_id(self, credential: Credential) -> Optional[str]:
        body = self.request("GET", f"{self.base_url()}/user/profile", operation="profile", credential=credential)
        company_id = body.get("companyId")
        return str(company_id) if company_id is not None else None

    def get_driver_hos(self, connection: Connection, provider_driver_id: str) -> DriverHOS:
        data = self.request(
            "GET",
            f"{self.base_url(connection)}/hos/driver/{provider_driver_id}/current",
            operation="driver_hos",
            credential=self.require_credential(connection),
        )
        return DriverHOS(
            driver_id=provider_driver_id,
            duty_status=map_duty_status(data.get("dutyStatus")),
            drive_remaining_minutes=as_int(data.get("drivingTimeRemaining")),
            shift_remaining_minutes=as_int(data.get("onDutyTimeRemaining")),
            cycle_remaining_minutes=as_int(data.get("cycleTimeRemaining")),
            status_changed_at=parse_timestamp(data.get("lastStatusChange")),
            vehicle_id=data.get("vehicleId"),
        )

    def get_driver_hos_logs(
        self,
        connection: Connection,
        provider_driver_id: str,
        start: datetime,
        end: datetime,
    ) -> list[HOSLogEntry]:
        entries = self.request(
            "GET",
            f"{self.base_url(connection)}/hos/driver/{provider_driver_id}/logs",
            operation="driver_hos_logs",
            credential=self.require_credential(connection),
            params={"startDate": date_param(start), "endDate": date_param(end)},
        )
        return [
            HOSLogEntry(
                driver_id=provider_driver_id,
                duty_status=map_duty_status(entry.get("dutyStatus")),
                start_at=parse_timestamp(entry.get("startTime")),
                end_at=parse_timestamp(entry.get("endTime")),
                location=entry.get("location"),
                vehicle_id=entry.get("vehicleId"),
            )
            for entry in entries
        ]

    def get_driver_location(self, connection: Connection, provider_driver_id: str) -> DriverLocation:
        data = self.request(
            "GET",
            f"{self.base_url(connection)}/location/driver/{provider_driver_id}/current",
            operation="driver_location",
            credential=self.require_credential(connection),
        )
        return DriverLocation(
            driver_id=provider_driver_id,
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            heading=as_float(data.get("heading")),
            speed_mph=as_float(data.get("speed")),
            recorded_at=parse_timestamp(data.get("timestamp")),
        )

    def sync_entity(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> SyncPage:
        path = ENTITY_PATHS.get(entity_type)
        if path is None:
            raise ValidationError(
                f"omnitracs does not sync {entity_type.value}", provider_type=self.provider_type.value
            )
        items = self.request(
            "GET",
            f"{self.base_url(connection)}{path}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
        )
        records = [
            SyncRecord(
                external_id=str(item["id"]),
                data=item,
                source_updated_at=parse_timestamp(item.get("lastModified")),
            )
            for item in items
        ]
        return SyncPage(records=records, windowed=False)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        event_type = require_event_type(payload, "type")
        data = payload.get("payload") or {}
        entity_id = data.get("vehicleId") or data.get("driverId")
        if event_type == "hos.status" and data.get("dutyStatus"):
            data = {**data, "dutyStatus": map_duty_status(data["dutyStatus"]).value}
        return ProviderWebhook(
            event_type=event_type,
            event_id=payload.get("messageId"),
            account_id=str(payload["companyId"]) if payload.get("companyId") is not None else None,
            occurred_at=parse_timestamp(payload.get("timestamp")),
            entity_id=str(entity_id) if entity_id is not None else None,
            data=data,
        )
