"""Configuration module for the IG validator."""

from ig_validator.config.base import ValidatorSettings
from ig_validator.config.loader import get_settings

__all__ = ["ValidatorSettings", "get_settings"]
