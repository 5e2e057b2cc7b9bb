"""Test configuration for the IG validator.

Builds a local FHIR package cache holding a cut-down R4 core package, a
terminology package and an implementation guide, and wires the validator to
fake terminology and registry services. No test touches the network.
"""

from pathlib import Path
from typing import Any, Dict

import pytest

from ig_validator.config import ValidatorSettings
from ig_validator.healthcare.fhir_package_manager import PackageCacheManager
from ig_validator.healthcare.fhir_terminology_client import TerminologyClient
from ig_validator.validator import IGValidator
from tests.mocks import MockPackageRegistry, MockTerminologyServer
from tests.mocks.fhir_definitions import (
    BIRTHSEX_EXTENSION,
    MRN_SYSTEM,
    birthsex_extension,
    birthsex_terminology,
    core_definitions,
    manifest,
    patient_profile,
    write_package,
)
from tests.mocks.fhir_services import IG_LIST_URL, REGISTRY_URL, TX_URL

IG_PACKAGE = "example.fhir.ig#1.0.0"
CORE_PACKAGE = "hl7.fhir.r4.core#4.0.1"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "fhir_compliance: mark test as checking FHIR conformance rules"
    )
    config.addinivalue_line(
        "markers", "terminology: mark test as exercising terminology lookups"
    )
    config.addinivalue_line(
        "markers", "packages: mark test as exercising package resolution"
    )


@pytest.fixture
def package_cache(tmp_path: Path) -> Path:
    """Package cache with the core, terminology and IG packages extracted."""
    cache = tmp_path / "packages"
    write_package(cache, manifest("hl7.fhir.r4.core", "4.0.1"), core_definitions())
    write_package(
        cache,
        manifest(
            "example.fhir.terminology",
            "1.0.0",
            {"hl7.fhir.r4.core": "4.0.1"},
        ),
        birthsex_terminology(),
    )
    write_package(
        cache,
        manifest(
            "example.fhir.ig",
            "1.0.0",
            {"hl7.fhir.r4.core": "4.0.1", "example.fhir.terminology": "1.0.0"},
        ),
        [patient_profile(), birthsex_extension()],
    )
    return cache


@pytest.fixture
def settings(package_cache: Path) -> ValidatorSettings:
    """Settings pointing at the test cache and the fake services."""
    return ValidatorSettings(
        _env_file=None,
        tx_server_url=TX_URL,
        package_cache_dir=package_cache,
        package_registry_url=REGISTRY_URL,
        ig_registry_url=IG_LIST_URL,
        http_timeout=5.0,
        http_max_retries=0,
    )


@pytest.fixture
def terminology_server() -> MockTerminologyServer:
    """Fake terminology server."""
    return MockTerminologyServer()


@pytest.fixture
def registry() -> MockPackageRegistry:
    """Fake package registry with two published guides."""
    return MockPackageRegistry(
        guides=[
            {
                "name": "Example IG",
                "npm-name": "example.fhir.ig",
                "canonical": "http://example.org/fhir",
            },
            {
                "name": "US Core",
                "npm-name": "hl7.fhir.us.core",
                "canonical": "http://hl7.org/fhir/us/core",
            },
            {
                "name": "US Core (mirror)",
                "npm-name": "hl7.fhir.us.core",
                "canonical": "http://hl7.org/fhir/us/core",
            },
        ]
    )


@pytest.fixture
def terminology_client(settings, terminology_server):
    """Terminology client talking to the fake server."""
    client = TerminologyClient.from_settings(settings, transport=terminology_server.transport)
    yield client
    client.close()


@pytest.fixture
def package_manager(settings, registry):
    """Package manager over the test cache and the fake registry."""
    manager = PackageCacheManager.from_settings(settings, transport=registry.transport)
    yield manager
    manager.close()


@pytest.fixture
def validator(settings, package_manager, terminology_client) -> IGValidator:
    """Validator built for the example implementation guide."""
    return IGValidator(
        IG_PACKAGE,
        settings=settings,
        package_manager=package_manager,
        terminology_client=terminology_client,
    )


@pytest.fixture
def valid_patient() -> Dict[str, Any]:
    """Patient conforming to the example profile."""
    return {
        "resourceType": "Patient",
        "id": "example",
        "extension": [{"url": BIRTHSEX_EXTENSION, "valueCode": "F"}],
        "identifier": [{"system": MRN_SYSTEM, "value": "12345"}],
        "active": True,
        "name": [{"family": "Doe", "given": ["Jane"]}],
        "gender": "female",
        "birthDate": "1980-04-12",
    }
