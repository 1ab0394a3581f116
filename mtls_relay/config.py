"""
Configuration module for the mTLS relay.

This module uses Pydantic Settings to load environment variables once at
process start. Every credential-related value is optional: a misconfigured
relay must still start and report its state through /health and /debug.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Upstream Gateway (fixed)
# =============================================================================

UPSTREAM_NAME = "SKAT"
UPSTREAM_HOST = "ei-indberetning.skat.dk"
UPSTREAM_PORT = 444
DEFAULT_UPSTREAM_PATH = "/B2B/EIndkomst/EIndkomstServiceFunctionBinding"

# Sent upstream when the caller omits Content-Type
DEFAULT_REQUEST_CONTENT_TYPE = "text/xml; charset=utf-8"
# Relayed to the caller when the upstream omits Content-Type
DEFAULT_RESPONSE_CONTENT_TYPE = "text/xml"

PROXY_ROUTE_PREFIX = "/proxy"
API_KEY_HEADER = "X-API-Key"
SOAP_ACTION_HEADER = "SOAPAction"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Certificate material, the optional API key and server options are
    defined here. Blank values are treated the same as unset values.
    """

    # =========================================================================
    # Client Certificate (OCES3, PKCS#12)
    # =========================================================================

    OCES3_CERTIFICATE_BASE64: Optional[str] = Field(
        default=None,
        description="Base64-encoded PKCS#12 bundle (key, certificate and chain)",
    )

    OCES3_CERTIFICATE_PASSWORD: Optional[str] = Field(
        default=None,
        description="Passphrase protecting the PKCS#12 bundle",
    )

    # =========================================================================
    # Caller Authorization
    # =========================================================================

    PROXY_API_KEY: Optional[str] = Field(
        default=None,
        description="Shared secret expected in the X-API-Key header (disabled when unset)",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Interface to bind the relay server",
    )

    PORT: int = Field(
        default=3000,
        description="Port to bind the relay server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root logging level",
    )

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=120.0,
        description="Total time allowed for one outbound call, send and full body read",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def api_key_required(self) -> bool:
        return bool(self.PROXY_API_KEY)

    @field_validator(
        "OCES3_CERTIFICATE_BASE64",
        "OCES3_CERTIFICATE_PASSWORD",
        "PROXY_API_KEY",
        mode="before",
    )
    @classmethod
    def blank_as_unset(cls, v: Optional[str]) -> Optional[str]:
        """Normalise empty strings to None so "set but empty" means unset."""
        if isinstance(v, str) and v == "":
            return None
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate LOG_LEVEL against the standard logging level names.

        Raises:
            ValueError: If the level is not a known logging level
        """
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()

        if level not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")

        return level


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Cached so the environment is read exactly once per process; changing
    configuration requires a restart.
    """
    return Settings()
