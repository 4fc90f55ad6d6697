"""
Shared configuration management for the webplow gateway.
"""

from typing import Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayConfig(BaseSettings):
    """Gateway settings, read from the environment (and an optional .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Listener
    listen_addr: str = Field(default="127.0.0.1:9000")
    read_timeout: float = Field(default=30.0, gt=0)
    write_timeout: float = Field(default=60.0, gt=0)
    idle_timeout: float = Field(default=120.0, gt=0)
    shutdown_timeout: float = Field(default=10.0, ge=0)

    # Credentials
    token_file: str = Field(default="tokens.json")

    # Backend
    backend_url: str = Field(
        default="http://127.0.0.1:48080",
        validation_alias=AliasChoices("backend_url", "imgproxy_url"),
    )
    backend_timeout: float = Field(default=60.0, gt=0)

    # Uploads
    temp_dir: str = Field(default="/var/www/imgproxy/uploads")
    max_file_size: int = Field(default=20 << 20, gt=0)

    # Logging
    log_file: Optional[str] = Field(default=None)
    log_level: str = Field(default="info")

    @field_validator("listen_addr")
    @classmethod
    def _check_listen_addr(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f"invalid listen address {value!r}, expected host:port")
        return value

    @field_validator("log_file", mode="before")
    @classmethod
    def _blank_log_file(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def listen_host_port(self) -> Tuple[str, int]:
        """Split ``listen_addr`` into host and port."""
        host, _, port = self.listen_addr.rpartition(":")
        return host.strip("[]") or "0.0.0.0", int(port)


def get_config(**overrides) -> GatewayConfig:
    """Load gateway configuration, applying explicit overrides on top of the environment."""
    return GatewayConfig(**overrides)
