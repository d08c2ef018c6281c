"""
proxy/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    NETWATCH_COLLECTOR_PROXIED_URL=https://api.netwatch.team
    NETWATCH_PROXY_LISTEN_ADDRESS=:8161
    NETWATCH_PROXY_DB_PATH=data/attacks.db
    NETWATCH_PROXY_DO_NOT_SUBMIT_ATTACKS=false

Settings are built once in main() and handed to each component; nothing in
the package reads a module-level settings object.
"""

from __future__ import annotations

import httpx
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TRUE_FLAGS = {"1", "true", "t", "yes", "y"}
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``:port``) into a bindable host and port."""
    host, sep, port_str = address.strip().rpartition(":")
    if not sep or not port_str.isdigit():
        raise ValueError(f"listen address {address!r} must look like 'host:port' or ':port'")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"listen port {port} out of range")
    host = host.strip("[]") or "0.0.0.0"
    return host, port


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NETWATCH_PROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Upstream collector (shares the sensor's variable name, hence no prefix)
    COLLECTOR_PROXIED_URL: str = Field(
        default="https://api.netwatch.team",
        validation_alias=AliasChoices(
            "NETWATCH_COLLECTOR_PROXIED_URL", "COLLECTOR_PROXIED_URL"
        ),
    )
    FORWARD_TIMEOUT_SECONDS: float = 60.0

    # Server
    LISTEN_ADDRESS: str = ":8161"

    # Storage
    DB_PATH: str = "/app/data/attacks.db"

    # Behaviour toggles
    LOG_REQUESTS: bool = False
    DEBUG_LOG: bool = False
    DO_NOT_SUBMIT_ATTACKS: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("COLLECTOR_PROXIED_URL")
    @classmethod
    def validate_upstream_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("NETWATCH_COLLECTOR_PROXIED_URL must be set")
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as exc:
            raise ValueError(f"could not parse NETWATCH_COLLECTOR_PROXIED_URL: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(
                f"NETWATCH_COLLECTOR_PROXIED_URL must be an absolute http(s) URL, got {v!r}"
            )
        return v

    @field_validator("LISTEN_ADDRESS")
    @classmethod
    def validate_listen_address(cls, v: str) -> str:
        parse_listen_address(v)
        return v.strip()

    @field_validator("LOG_REQUESTS", "DEBUG_LOG", "DO_NOT_SUBMIT_ATTACKS", mode="before")
    @classmethod
    def parse_flag(cls, v):
        # Anything not recognisably "on" is off, as the sensors' own env parsing does.
        if isinstance(v, str):
            return v.strip().lower() in _TRUE_FLAGS
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return v

    @property
    def log_requests_enabled(self) -> bool:
        return self.LOG_REQUESTS or self.DEBUG_LOG

    def listen_host_port(self) -> tuple[str, int]:
        return parse_listen_address(self.LISTEN_ADDRESS)
