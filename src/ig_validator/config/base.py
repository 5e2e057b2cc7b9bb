"""Base configuration settings."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TX_SERVER_URL = "http://tx.fhir.org"
DEFAULT_PACKAGE_REGISTRY_URL = "https://packages.fhir.org"
DEFAULT_IG_REGISTRY_URL = (
    "https://raw.githubusercontent.com/FHIR/ig-registry/master/fhir-ig-list.json"
)


class ValidatorSettings(BaseSettings):
    """Validator settings.

    Every field can be overridden from the environment (case-insensitive),
    e.g. ``TX_SERVER_URL`` or ``PACKAGE_CACHE_DIR``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Terminology
    tx_server_url: str = Field(
        default=DEFAULT_TX_SERVER_URL,
        description="Terminology server used for code and value set checks",
    )

    # Packages
    package_cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".fhir" / "packages",
        description="Local FHIR package cache directory",
    )
    package_registry_url: str = DEFAULT_PACKAGE_REGISTRY_URL
    ig_registry_url: str = DEFAULT_IG_REGISTRY_URL

    # HTTP
    http_timeout: float = 60.0
    http_max_retries: int = 3

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    @field_validator("tx_server_url", "package_registry_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalise base URLs so paths can be appended."""
        return v.rstrip("/")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only console and json renderers exist."""
        if v not in ("console", "json"):
            raise ValueError(f"log_format must be 'console' or 'json', got {v!r}")
        return v

    @field_validator("http_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        """Retry count is an attempt budget, never negative."""
        if v < 0:
            raise ValueError("http_max_retries must be >= 0")
        return v
