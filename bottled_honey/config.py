"""
Honeypot configuration management
"""
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bottled_honey.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Honeypot settings, read from the environment (or a .env file)"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Listener
    address: str = "0.0.0.0:7777"  # host:port
    max_connections: int = Field(default=256, ge=1)
    drain_timeout_sec: float = Field(default=5.0, ge=0)

    # Handshake
    password_chance: float = Field(default=0.0, ge=0.0, le=1.0)
    reject_password: bool = False  # disconnect after a password attempt instead of continuing
    idle_timeout_sec: float = Field(default=3.0, gt=0)
    password_timeout_sec: float = Field(default=30.0, gt=0)
    completion_linger_sec: float = Field(default=1.0, ge=0)
    max_frame_size: int = Field(default=5 * 1024, ge=3, le=0xFFFF)

    # Telemetry
    otel_endpoint: Optional[str] = None
    otel_headers: Optional[str] = None  # "key=val,key=val"
    service_name: str = "bottled_honey"
    telemetry_queue_size: int = Field(default=1024, ge=1)

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        parse_address(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def host(self) -> str:
        return parse_address(self.address)[0]

    @property
    def port(self) -> int:
        return parse_address(self.address)[1]

    def parsed_otel_headers(self) -> Dict[str, str]:
        return parse_headers(self.otel_headers)


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` into its parts, raising ValueError when malformed."""
    host, sep, port_text = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in {address!r}")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range in {address!r}")
    return host.strip("[]"), port


def parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse extra telemetry headers.

    Expects "key=val,key=val". Keys can't contain equal signs and neither
    keys nor values can contain commas; entries without '=' are skipped.
    """
    headers: Dict[str, str] = {}
    if not raw:
        return headers
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        headers[key.strip()] = value.strip()
    return headers


def load_settings(**overrides: Any) -> Settings:
    """
    Build settings from the environment, with explicit overrides on top.

    Overrides set to None are ignored so unset CLI flags fall through to
    the environment.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid configuration",
            details={"errors": e.errors(include_url=False)},
        ) from e
