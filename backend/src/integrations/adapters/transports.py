"""
File and EDI transports for TMS connections

TMS providers accept three integration types. API calls live in each
adapter; the SFTP file drop and the EDI document exchange are the same for
every provider and are implemented here.
"""

import base64
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from infrastructure.sftp import SFTPAuthenticationError, SFTPClient, SFTPConfig, SFTPError
from ..credentials import EdiCredential, SftpCredential
from ..domain import EntityType, SyncWindow
from ..errors import AuthenticationError, ProviderUnavailableError, ValidationError
from ..ports import SyncPage, SyncRecord
from .common import parse_timestamp

logger = logging.getLogger(__name__)

OUTBOUND_DIR = "outbound"
INBOUND_DIR = "inbound"
FILES_PER_PAGE = 20


class SftpExchange:
    """
    SFTP file drop.

    Partner exports land as <outbound>/<entity_type>*.json containing either
    a JSON list of entities or {"records": [...]}. Loads and status updates
    are written atomically to <inbound>.
    """

    def __init__(
        self,
        provider_type: str,
        client_factory: Optional[Callable[[SFTPConfig], SFTPClient]] = None,
        timeout: float = 30.0,
    ):
        self.provider_type = provider_type
        self._client_factory = client_factory or SFTPClient
        self._timeout = timeout

    def _config(self, credential: SftpCredential) -> SFTPConfig:
        return SFTPConfig(
            host=credential.host,
            port=credential.port,
            username=credential.user,
            password=credential.password,
            private_key=credential.private_key,
            base_path=credential.path,
            timeout=self._timeout,
        )

    @contextmanager
    def session(self, credential: SftpCredential) -> Iterator[SFTPClient]:
        client = self._client_factory(self._config(credential))
        try:
            client.connect()
        except SFTPAuthenticationError as e:
            raise AuthenticationError(
                f"{self.provider_type} SFTP login rejected: {e}", provider_type=self.provider_type
            ) from e
        except SFTPError as e:
            raise ProviderUnavailableError(
                f"{self.provider_type} SFTP unavailable: {e}", provider_type=self.provider_type
            ) from e
        try:
            yield client
        except SFTPError as e:
            raise ProviderUnavailableError(
                f"{self.provider_type} SFTP operation failed: {e}", provider_type=self.provider_type
            ) from e
        finally:
            client.close()

    def test(self, credential: SftpCredential) -> bool:
        with self.session(credential) as client:
            return client.exists(OUTBOUND_DIR) and client.exists(INBOUND_DIR)

    def pull(
        self,
        credential: SftpCredential,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> SyncPage:
        """Read one page of export files.

        Files carry no server-side query, so the window is applied client
        side against each record's updated_at (or the file mtime).
        """
        offset = int(cursor) if cursor else 0
        with self.session(credential) as client:
            entries = client.list_entries(OUTBOUND_DIR, pattern=f"{entity_type.value}*.json")
            page = entries[offset:offset + FILES_PER_PAGE]
            records = []
            for entry in page:
                for item in self._decode(client.read_file(entry.path), entry.path):
                    source_updated_at = parse_timestamp(item.get("updated_at")) or entry.modified_at
                    if source_updated_at is not None and not window.contains(source_updated_at):
                        continue
                    records.append(SyncRecord(
                        external_id=str(item["id"]),
                        data=item,
                        source_updated_at=source_updated_at,
                    ))

        next_offset = offset + FILES_PER_PAGE
        next_cursor = str(next_offset) if next_offset < len(entries) else None
        return SyncPage(records=records, next_cursor=next_cursor, windowed=True)

    def _decode(self, content: str, path: str) -> list[dict[str, Any]]:
        try:
            body = json.loads(content)
        except ValueError as e:
            raise ValidationError(
                f"{self.provider_type} export {path} is not valid JSON", provider_type=self.provider_type
            ) from e
        items = body.get("records", []) if isinstance(body, dict) else body
        if not isinstance(items, list) or any(not isinstance(i, dict) or "id" not in i for i in items):
            raise ValidationError(
                f"{self.provider_type} export {path} has no record list with ids",
                provider_type=self.provider_type,
            )
        return items

    def write_load(self, credential: SftpCredential, load_id: str, payload: dict[str, Any]) -> bool:
        with self.session(credential) as client:
            client.write_file(f"{INBOUND_DIR}/load_{load_id}.json", json.dumps(payload, default=str))
        return True

    def write_status(
        self,
        credential: SftpCredential,
        load_id: str,
        provider_status: str,
        now: datetime,
    ) -> bool:
        payload = {"load_id": load_id, "status": provider_status, "timestamp": now.isoformat()}
        with self.session(credential) as client:
            client.write_file(
                f"{INBOUND_DIR}/status_{load_id}_{now.strftime('%Y%m%dT%H%M%S')}.json",
                json.dumps(payload),
            )
        return True


class EdiExchange:
    """
    EDI document exchange over HTTP.

    X12 documents are POSTed to the partner's endpoint_url with HTTP basic
    auth (trading partner id / password) when a password is configured.
    """

    def __init__(self, adapter):
        self._adapter = adapter

    @property
    def provider_type(self) -> str:
        return self._adapter.provider_type.value

    def _headers(self, credential: EdiCredential) -> dict[str, str]:
        headers = {"Content-Type": "application/edi-x12"}
        if credential.password:
            token = base64.b64encode(f"{credential.trading_partner_id}:{credential.password}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        return headers

    def test(self, credential: EdiCredential) -> bool:
        if not credential.endpoint_url:
            return False
        self._adapter.request(
            "GET", credential.endpoint_url, operation="edi_ping", headers=self._headers(credential)
        )
        return True

    def send(self, credential: EdiCredential, document: str, operation: str) -> bool:
        if not credential.endpoint_url:
            raise ValidationError(
                f"{self.provider_type} EDI connection has no endpoint_url", provider_type=self.provider_type
            )
        self._adapter.request(
            "POST",
            credential.endpoint_url,
            operation=operation,
            content=document,
            headers=self._headers(credential),
        )
        return True
