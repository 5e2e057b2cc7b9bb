"""Core Exceptions Module.

This module defines the exceptions raised by the IG validator. Each failure
category has its own class so callers can tell "could not build the
validator" apart from "could not read a file", "could not parse it",
"could not validate" and "could not list guides".
"""

from typing import Optional


class IGValidatorError(Exception):
    """Base exception for all IG validator errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class ConstructionError(IGValidatorError):
    """Raised when the validator cannot be built."""

    def __init__(self, message: str = "Validator construction failed"):
        """Initialize ConstructionError."""
        super().__init__(message, "CONSTRUCTION_ERROR")


class PackageError(IGValidatorError):
    """Raised when a package cannot be fetched, read or extracted."""


class PackageNotFoundError(PackageError):
    """Raised when a package or package version does not exist."""

    def __init__(self, message: str = "Package not found"):
        """Initialize PackageNotFoundError."""
        super().__init__(message, "PACKAGE_NOT_FOUND")


class RegistryUnavailableError(PackageError):
    """Raised when the package or guide registry cannot be reached."""

    def __init__(self, message: str = "Package registry unavailable"):
        """Initialize RegistryUnavailableError."""
        super().__init__(message, "REGISTRY_UNAVAILABLE")


class ProfileIOError(IGValidatorError):
    """Raised when a profile file cannot be read."""

    def __init__(self, message: str = "Profile could not be read"):
        """Initialize ProfileIOError."""
        super().__init__(message, "PROFILE_IO_ERROR")


class ParseError(IGValidatorError):
    """Raised when bytes cannot be decoded into a FHIR document."""


class ProfileParseError(ParseError):
    """Raised when profile content is malformed or of unknown format."""

    def __init__(self, message: str = "Profile could not be parsed"):
        """Initialize ProfileParseError."""
        super().__init__(message, "PROFILE_PARSE_ERROR")


class ResourceParseError(ParseError):
    """Raised when the resource handed to validate is not valid JSON."""

    def __init__(self, message: str = "Resource could not be parsed"):
        """Initialize ResourceParseError."""
        super().__init__(message, "RESOURCE_PARSE_ERROR")


class ProfileRegistrationError(IGValidatorError):
    """Raised when a definition cannot be registered."""

    def __init__(self, message: str = "Profile could not be registered"):
        """Initialize ProfileRegistrationError."""
        super().__init__(message, "PROFILE_REGISTRATION_ERROR")


class SnapshotError(IGValidatorError):
    """Raised when a profile snapshot cannot be generated from its base."""

    def __init__(self, message: str = "Snapshot generation failed"):
        """Initialize SnapshotError."""
        super().__init__(message, "SNAPSHOT_ERROR")


class TerminologyError(IGValidatorError):
    """Raised when the terminology server cannot be reached or answers badly."""

    def __init__(self, message: str = "Terminology service failure"):
        """Initialize TerminologyError."""
        super().__init__(message, "TERMINOLOGY_ERROR")


class ValidationError(IGValidatorError):
    """Raised when validation could not be performed."""

    def __init__(self, message: str = "Validation could not be performed"):
        """Initialize ValidationError."""
        super().__init__(message, "VALIDATION_ERROR")


class UnknownProfileError(ValidationError):
    """Raised when a requested profile is not loaded."""

    def __init__(self, url: str):
        """Initialize UnknownProfileError."""
        super().__init__(f"Profile {url} is not loaded")
        self.code = "UNKNOWN_PROFILE"
        self.url = url


class DiscoveryError(IGValidatorError):
    """Raised when the list of known implementation guides cannot be fetched."""

    def __init__(self, message: str = "Implementation guides could not be listed"):
        """Initialize DiscoveryError."""
        super().__init__(message, "DISCOVERY_ERROR")
