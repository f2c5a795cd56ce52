"""
Samsara ELD adapter

OAuth2 provider. Durations in HOS responses are milliseconds; list
endpoints paginate with an opaque endCursor passed back as "after".
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
from ..errors import NotFoundError, ValidationError
from ..events import CanonicalEventType
from ..ports import ProviderWebhook, SyncPage, SyncRecord
from .common import as_float, iso_param, ms_to_minutes, parse_timestamp, require_event_type, unwrap

DUTY_STATUS_MAP = {
    "driving": DutyStatus.DRIVING,
    "onDuty": DutyStatus.ON_DUTY,
    "offDuty": DutyStatus.OFF_DUTY,
    "sleeperBed": DutyStatus.SLEEPER_BERTH,
    "yardMove": DutyStatus.ON_DUTY,
    "personalConveyance": DutyStatus.OFF_DUTY,
}

ENTITY_PATHS = {
    EntityType.DRIVERS: "/fleet/drivers",
    EntityType.VEHICLES: "/fleet/vehicles",
}


class SamsaraAdapter(OAuth2ProviderAdapter):
    provider_type = ProviderType.SAMSARA
    supported_entity_types = frozenset(ENTITY_PATHS)
    signature_header = "X-Samsara-Signature"
    webhook_event_map = {
        "AppUninstalled": CanonicalEventType.CONNECTION_REVOKED,
        "TokenRevoked": CanonicalEventType.CONNECTION_REVOKED,
        "VehicleLocationUpdated": CanonicalEventType.VEHICLE_LOCATION_UPDATED,
        "DriverLocationUpdated": CanonicalEventType.DRIVER_LOCATION_UPDATED,
        "HosStatusChanged": CanonicalEventType.DRIVER_HOS_UPDATED,
    }

    def test_connection(self, connection: Connection) -> bool:
        self.request(
            "GET",
            f"{self.base_url(connection)}/users/me",
            operation="test_connection",
            credential=self.require_credential(connection),
        )
        return True

    def fetch_account_id(self, credential: Credential) -> Optional[str]:
        body = self.request("GET", f"{self.base_url()}/users/me", operation="profile", credential=credential)
        org_id = (body.get("data") or {}).get("orgId")
        return str(org_id) if org_id is not None else None

    def get_driver_hos(self, connection: Connection, provider_driver_id: str) -> DriverHOS:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/fleet/drivers/{provider_driver_id}/hos_status",
            operation="driver_hos",
            credential=self.require_credential(connection),
        )
        data = unwrap(body, "data", self.provider_type.value)
        return DriverHOS(
            driver_id=provider_driver_id,
            duty_status=DUTY_STATUS_MAP.get(data.get("dutyStatus"), DutyStatus.OFF_DUTY),
            drive_remaining_minutes=ms_to_minutes(data.get("drivingTimeRemaining")),
            shift_remaining_minutes=ms_to_minutes(data.get("timeUntilEndOfShift")),
            cycle_remaining_minutes=ms_to_minutes(data.get("timeUntilEndOfCycle")),
            break_remaining_minutes=ms_to_minutes(data.get("timeUntilBreak")),
            status_changed_at=parse_timestamp(data.get("time")),
            vehicle_id=(data.get("vehicle") or {}).get("id"),
        )

    def get_driver_hos_logs(
        self,
        connection: Connection,
        provider_driver_id: str,
        start: datetime,
        end: datetime,
    ) -> list[HOSLogEntry]:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/fleet/drivers/{provider_driver_id}/hos_logs",
            operation="driver_hos_logs",
            credential=self.require_credential(connection),
            params={"from": iso_param(start), "to": iso_param(end)},
        )
        return [
            HOSLogEntry(
                driver_id=provider_driver_id,
                duty_status=DUTY_STATUS_MAP.get(entry.get("hosStatusType"), DutyStatus.OFF_DUTY),
                start_at=parse_timestamp(entry.get("logStartTime")),
                end_at=parse_timestamp(entry.get("logEndTime")),
                location=(entry.get("location") or {}).get("name"),
                vehicle_id=(entry.get("vehicle") or {}).get("id"),
            )
            for entry in unwrap(body, "data", self.provider_type.value)
        ]

    def get_driver_location(self, connection: Connection, provider_driver_id: str) -> DriverLocation:
        body = self.request(
            "GET",
            f"{self.base_url(connection)}/fleet/drivers/{provider_driver_id}/locations",
            operation="driver_location",
            credential=self.require_credential(connection),
        )
        points = unwrap(body, "data", self.provider_type.value)
        if not points:
            raise NotFoundError(
                f"samsara has no location for driver {provider_driver_id}",
                provider_type=self.provider_type.value,
            )
        latest = points[0]
        return DriverLocation(
            driver_id=provider_driver_id,
            latitude=float(latest["latitude"]),
            longitude=float(latest["longitude"]),
            heading=as_float(latest.get("heading")),
            speed_mph=as_float(latest.get("speed")),
            recorded_at=parse_timestamp(latest.get("time")),
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
                f"samsara does not sync {entity_type.value}", provider_type=self.provider_type.value
            )
        params = {"limit": 512}
        if cursor:
            params["after"] = cursor
        body = self.request(
            "GET",
            f"{self.base_url(connection)}{path}",
            operation=f"sync_{entity_type.value}",
            credential=self.require_credential(connection),
            params=params,
        )
        records = [
            SyncRecord(
                external_id=str(item["id"]),
                data=item,
                source_updated_at=parse_timestamp(item.get("updatedAtTime")),
            )
            for item in body.get("data", [])
        ]
        pagination = body.get("pagination") or {}
        next_cursor = pagination.get("endCursor") if pagination.get("hasNextPage") else None
        return SyncPage(records=records, next_cursor=next_cursor, windowed=False)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        event_type = require_event_type(payload, "eventType")
        data = payload.get("data") or {}
        entity = data.get("vehicle") or data.get("driver") or {}
        if event_type == "HosStatusChanged" and data.get("dutyStatus"):
            status = DUTY_STATUS_MAP.get(data["dutyStatus"], DutyStatus.OFF_DUTY)
            data = {**data, "dutyStatus": status.value}
        return ProviderWebhook(
            event_type=event_type,
            event_id=payload.get("eventId"),
            account_id=str(payload["orgId"]) if payload.get("orgId") is not None else None,
            occurred_at=parse_timestamp(payload.get("eventTime")),
            entity_id=str(entity["id"]) if entity.get("id") is not None else None,
            data=data,
        )
