"""SFTP infrastructure for TMS file exchange."""

from .client import SFTPClient, SFTPConfig, SFTPError, SFTPAuthenticationError, RemoteFile

__all__ = ["SFTPClient", "SFTPConfig", "SFTPError", "SFTPAuthenticationError", "RemoteFile"]
