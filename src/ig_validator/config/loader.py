"""Configuration loader."""

from functools import lru_cache

from ig_validator.config.base import ValidatorSettings


@lru_cache()
def get_settings() -> ValidatorSettings:
    """Get cached settings instance."""
    return ValidatorSettings()
