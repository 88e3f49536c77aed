"""Gateway configuration loaded from ``CLAMAV_GATEWAY_*`` environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from clamav_gateway.models import TransportMode


class GatewaySettings(BaseSettings):
    """Process-wide settings, read once at startup."""

    model_config = SettingsConfigDict(env_prefix="CLAMAV_GATEWAY_", env_file=".env", extra="ignore")

    # None: probe the daemon at startup and pick local_process if unreachable.
    transport_mode: TransportMode | None = Field(default=None)
    fallback_enabled: bool = Field(default=True)

    clamd_host: str = Field(default="localhost")
    clamd_port: int = Field(default=3310, ge=1, le=65535)
    clamd_socket: str | None = Field(default=None)
    clamd_timeout: float = Field(default=30.0, gt=0)
    chunk_size: int = Field(default=64 * 1024, ge=1024, le=1024 * 1024)

    clamscan_path: str = Field(default="clamscan")
    clamscan_timeout: float = Field(default=120.0, gt=0)

    freshclam_path: str = Field(default="freshclam")
    sigtool_path: str = Field(default="sigtool")
    update_timeout: float = Field(default=120.0, gt=0)
    database_dir: str | None = Field(default="/var/lib/clamav")

    max_upload_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    scan_timeout: float | None = Field(default=None, gt=0)
    spool_dir: str | None = Field(default=None)
    scan_workers: int = Field(default=8, ge=2)

    recorder_url: str | None = Field(default=None)
    recorder_api_key: str | None = Field(default=None)
    recorder_timeout: float = Field(default=10.0, gt=0)
