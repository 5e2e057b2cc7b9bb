"""FHIR implementation guide validator."""

from ig_validator.core.exceptions import (
    ConstructionError,
    DiscoveryError,
    IGValidatorError,
    ParseError,
    ProfileIOError,
    ProfileParseError,
    ProfileRegistrationError,
    ResourceParseError,
    UnknownProfileError,
    ValidationError,
)
from ig_validator.healthcare.validation.outcome import (
    IssueSeverity,
    ValidationIssue,
    ValidationOutcome,
)
from ig_validator.validator import IGValidator

__version__ = "0.1.0"

__all__ = [
    "IGValidator",
    "ValidationOutcome",
    "ValidationIssue",
    "IssueSeverity",
    "IGValidatorError",
    "ConstructionError",
    "DiscoveryError",
    "ParseError",
    "ProfileIOError",
    "ProfileParseError",
    "ProfileRegistrationError",
    "ResourceParseError",
    "UnknownProfileError",
    "ValidationError",
]
