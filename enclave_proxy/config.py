"""
Configuration module for the Enclave Proxy.

This module uses Pydantic Settings to load and validate environment variables
for the upstream credential, listen address, upstream policy and streaming
behaviour.

Environment variables are loaded from .env file or system environment. The
resulting settings object is frozen: it is built once at startup and never
changes while the process runs.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Holds the credential injected into upstream requests and the knobs that
    govern how requests are forwarded.
    """

    # =========================================================================
    # Upstream Credential
    # =========================================================================

    TINFOIL_API_KEY: Optional[str] = Field(
        None,
        description="API key sent upstream as a bearer token (never given to clients)",
    )

    # =========================================================================
    # Proxy Server Configuration
    # =========================================================================

    PROXY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the proxy server",
    )

    PROXY_PORT: int = Field(
        default=8080,
        description="Port to bind the proxy server",
        ge=1,
        le=65535,
    )

    PROXY_NAME: str = Field(
        default="enclave-proxy",
        description="Value of the X-Proxy-Served-By response header",
        min_length=1,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Upstream Policy
    # =========================================================================

    UPSTREAM_ALLOWED_HOSTS: Optional[str] = Field(
        None,
        description="Comma-separated list of upstream hosts clients may target (unset trusts any host)",
    )

    UPSTREAM_CONNECT_TIMEOUT: Optional[float] = Field(
        None,
        description="Upstream connect timeout in seconds (unset waits indefinitely)",
        gt=0,
    )

    UPSTREAM_READ_TIMEOUT: Optional[float] = Field(
        None,
        description="Upstream read/write timeout in seconds (unset waits indefinitely)",
        gt=0,
    )

    FORWARD_ANY_METHOD: bool = Field(
        default=True,
        description="Re-issue GET/PUT/PATCH/DELETE upstream as POST instead of rejecting them",
    )

    # =========================================================================
    # Streaming
    # =========================================================================

    STREAM_FLUSH: bool = Field(
        default=True,
        description="Send each upstream chunk to the client as soon as it arrives",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def upstream_allowed_hosts_list(self) -> List[str]:
        """
        Parse and return UPSTREAM_ALLOWED_HOSTS as a clean list.

        Returns:
            List of lowercase host names, or empty list if not configured.
        """
        if not self.UPSTREAM_ALLOWED_HOSTS:
            return []

        return [
            host.strip().lower()
            for host in self.UPSTREAM_ALLOWED_HOSTS.split(",")
            if host.strip()
        ]

    @property
    def has_credential(self) -> bool:
        return bool(self.TINFOIL_API_KEY)

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate the log level is one the logging module understands.

        Raises:
            ValueError: If the level is not a standard logging level name
        """
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return v.upper()

    @field_validator("UPSTREAM_ALLOWED_HOSTS")
    @classmethod
    def validate_allowed_hosts(cls, v: Optional[str]) -> Optional[str]:
        """
        Validate that UPSTREAM_ALLOWED_HOSTS holds bare host names.

        Raises:
            ValueError: If an entry looks like a URL or contains spaces
        """
        if v is None:
            return v

        for host in (h.strip() for h in v.split(",")):
            if not host:
                continue
            if "://" in host or "/" in host or " " in host:
                raise ValueError(
                    f"Invalid host entry: '{host}'. "
                    "Expected a bare host name such as 'inference.example.com'"
                )

        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If environment variables are present but invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup so operators see misconfiguration in
    the logs before the first request fails.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if not settings.has_credential:
        errors.append("TINFOIL_API_KEY is not set; every proxied request will fail with 500")

    if not settings.upstream_allowed_hosts_list:
        warnings.append(
            "UPSTREAM_ALLOWED_HOSTS is not set; clients may direct the credential to any host"
        )

    if settings.UPSTREAM_READ_TIMEOUT is None:
        warnings.append("UPSTREAM_READ_TIMEOUT is not set; a silent upstream can hold a request open indefinitely")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "allowed_hosts": settings.upstream_allowed_hosts_list,
        "stream_flush": settings.STREAM_FLUSH,
    }
