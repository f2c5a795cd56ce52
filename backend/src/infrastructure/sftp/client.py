"""SFTP client for TMS file exchange with atomic writes.

Used by TMS connections with integration_type "sftp": entity files are
pulled from the partner's outbound directory and load tenders / status
updates are written to its inbound directory.
"""

import fnmatch
import logging
import posixpath
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from io import StringIO
from typing import Optional, List

import paramiko

logger = logging.getLogger(__name__)


class SFTPError(Exception):
    """Base exception for SFTP operations."""
    pass


class SFTPAuthenticationError(SFTPError):
    """Server rejected the supplied credentials."""
    pass


@dataclass
class SFTPConfig:
    """SFTP connection configuration.

    Attributes:
        host: SFTP server hostname
        username: Username for authentication
        port: SFTP server port (default 22)
        password: Password (mutually exclusive with private_key)
        private_key: PEM private key content (mutually exclusive with password)
        base_path: Partner root directory
        atomic_write: Whether to use atomic write (.tmp + rename)
        timeout: Socket and banner timeout in seconds
    """
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    private_key: Optional[str] = None
    base_path: str = "/"
    atomic_write: bool = True
    timeout: float = 30.0


@dataclass
class RemoteFile:
    """Directory entry returned by list_entries."""
    filename: str
    path: str
    modified_at: Optional[datetime]
    size: int = 0


class SFTPClient:
    """SFTP client with atomic write support.

    Example:
        config = SFTPConfig(host="sftp.partner.com", username="carrier", password="secret")
        with SFTPClient(config) as client:
            client.write_file("inbound/load_123.json", payload)
    """

    def __init__(self, config: SFTPConfig):
        self.config = config
        self._ssh_client: Optional[paramiko.SSHClient] = None
        self._sftp_client: Optional[paramiko.SFTPClient] = None

    def connect(self) -> None:
        """Establish SFTP connection.

        Raises:
            SFTPAuthenticationError: If credentials are rejected
            SFTPError: If the connection fails for any other reason
        """
        connect_kwargs = {
            "hostname": self.config.host,
            "port": self.config.port,
            "username": self.config.username,
            "look_for_keys": False,
            "allow_agent": False,
            "timeout": self.config.timeout,
            "banner_timeout": self.config.timeout,
            "auth_timeout": self.config.timeout,
        }

        if self.config.private_key:
            try:
                connect_kwargs["pkey"] = paramiko.RSAKey.from_private_key(StringIO(self.config.private_key))
            except paramiko.SSHException as e:
                raise SFTPAuthenticationError(f"Invalid private key: {e}") from e
        elif self.config.password:
            connect_kwargs["password"] = self.config.password
        else:
            raise SFTPAuthenticationError("Either password or private_key must be provided")

        try:
            self._ssh_client = paramiko.SSHClient()
            self._ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            logger.info(f"Connecting to SFTP server {self.config.host}:{self.config.port}")
            self._ssh_client.connect(**connect_kwargs)
            self._sftp_client = self._ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self.close()
            raise SFTPAuthenticationError(f"Authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise SFTPError(f"SSH connection failed: {e}") from e

    def close(self) -> None:
        if self._sftp_client:
            self._sftp_client.close()
            self._sftp_client = None
        if self._ssh_client:
            self._ssh_client.close()
            self._ssh_client = None

    def _ensure_connected(self) -> paramiko.SFTPClient:
        if not self._sftp_client:
            raise SFTPError("Not connected to SFTP server. Call connect() first.")
        return self._sftp_client

    def _resolve(self, path: str) -> str:
        if path.startswith("/"):
            return path
        return posixpath.join(self.config.base_path, path)

    def write_file(self, path: str, content: str) -> str:
        """Write a file, renaming from .tmp so readers never see partial content.

        Args:
            path: Target path, relative to base_path unless absolute
            content: File content

        Returns:
            Full remote path written

        Raises:
            SFTPError: If the write fails
        """
        sftp = self._ensure_connected()
        final_path = self._resolve(path)
        tmp_path = f"{final_path}.tmp" if self.config.atomic_write else final_path

        try:
            with sftp.open(tmp_path, "w") as remote_file:
                remote_file.write(content)
            if self.config.atomic_write:
                sftp.posix_rename(tmp_path, final_path)
        except IOError as e:
            if self.config.atomic_write:
                try:
                    sftp.remove(tmp_path)
                except IOError:
                    logger.debug(f"Temporary file {tmp_path} already gone")
            raise SFTPError(f"Failed to write file {final_path}: {e}") from e

        logger.info(f"Wrote file to SFTP: {final_path}")
        return final_path

    def list_entries(self, directory: str, pattern: Optional[str] = None) -> List[RemoteFile]:
        """List regular files in a directory, oldest first.

        Raises:
            SFTPError: If listing fails
        """
        sftp = self._ensure_connected()
        target_dir = self._resolve(directory)

        try:
            attrs = sftp.listdir_attr(target_dir)
        except IOError as e:
            raise SFTPError(f"Failed to list directory {target_dir}: {e}") from e

        entries = []
        for attr in attrs:
            if attr.st_mode is not None and not stat.S_ISREG(attr.st_mode):
                continue
            if pattern and not fnmatch.fnmatch(attr.filename, pattern):
                continue
            modified_at = (
                datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc)
                if attr.st_mtime is not None else None
            )
            entries.append(RemoteFile(
                filename=attr.filename,
                path=posixpath.join(target_dir, attr.filename),
                modified_at=modified_at,
                size=attr.st_size or 0,
            ))

        entries.sort(key=lambda e: (e.modified_at or datetime.min.replace(tzinfo=timezone.utc), e.filename))
        return entries

    def read_file(self, path: str) -> str:
        sftp = self._ensure_connected()
        full_path = self._resolve(path)
        try:
            with sftp.open(full_path, "r") as remote_file:
                content = remote_file.read()
        except IOError as e:
            raise SFTPError(f"Failed to read file {full_path}: {e}") from e
        return content.decode() if isinstance(content, bytes) else content

    def exists(self, path: str) -> bool:
        sftp = self._ensure_connected()
        try:
            sftp.stat(self._resolve(path))
        except IOError:
            return False
        return True

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
