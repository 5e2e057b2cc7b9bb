"""FHIR release and core package naming helpers."""

from typing import Dict, NamedTuple


class FHIRRelease(NamedTuple):
    """A published FHIR release and its core package."""

    major_minor: str
    current_version: str
    core_package: str
    release_path: str


FHIR_RELEASES: Dict[str, FHIRRelease] = {
    "1.0": FHIRRelease("1.0", "1.0.2", "hl7.fhir.r2.core", "r2"),
    "3.0": FHIRRelease("3.0", "3.0.2", "hl7.fhir.r3.core", "r3"),
    "4.0": FHIRRelease("4.0", "4.0.1", "hl7.fhir.r4.core", "r4"),
    "4.3": FHIRRelease("4.3", "4.3.0", "hl7.fhir.r4b.core", "r4b"),
    "5.0": FHIRRelease("5.0", "5.0.0", "hl7.fhir.r5.core", "r5"),
}

CORE_PACKAGES = {release.core_package for release in FHIR_RELEASES.values()}


def get_release(version: str) -> FHIRRelease:
    """Find the release for "4.0", "4.0.1" or any other patch of it.

    Raises:
        ValueError: If the version does not belong to a known release
    """
    parts = version.split(".")
    if len(parts) < 2:
        raise ValueError(f"Invalid FHIR version: {version!r}")
    release = FHIR_RELEASES.get(f"{parts[0]}.{parts[1]}")
    if release is None:
        raise ValueError(f"Unsupported FHIR version: {version!r}")
    return release


def package_for_version(version: str) -> str:
    """Return the core package id for a FHIR version."""
    return get_release(version).core_package


def current_version(version: str) -> str:
    """Return the latest published patch for a FHIR version."""
    return get_release(version).current_version


def release_path(version: str) -> str:
    """Return the short release code used in server paths (r4, r5...)."""
    return get_release(version).release_path


def is_core_package(package_id: str) -> bool:
    """Check whether a package id (with or without version) is a core spec."""
    return package_id.split("#", 1)[0] in CORE_PACKAGES


def versions_match(left: str, right: str) -> bool:
    """Check two versions belong to the same release."""
    try:
        return get_release(left) == get_release(right)
    except ValueError:
        return False
