"""Implementation guide validator.

``IGValidator`` builds a validation engine for one implementation guide and
the base FHIR specification it depends on, then validates resources
against profiles from that guide. Profiles can be added at runtime, and the
guides published in the FHIR IG registry can be listed.

Example::

    validator = IGValidator("hl7.fhir.us.core#6.1.0")
    outcome = validator.validate(
        patient_json,
        ["http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient"],
    )
    for issue in outcome.issues:
        print(issue.severity, issue.location, issue.message)
"""

import threading
from pathlib import Path
from typing import List, Optional, Sequence, Union

from fhirclient.models.fhirabstractresource import FHIRAbstractResource

from ig_validator.config import ValidatorSettings, get_settings
from ig_validator.core.exceptions import (
    ConstructionError,
    DiscoveryError,
    IGValidatorError,
    PackageError,
    ParseError,
    ProfileIOError,
    ProfileParseError,
)
from ig_validator.healthcare.fhir_package_manager import KnownIG, PackageCacheManager
from ig_validator.healthcare.fhir_parser import FhirFormat, detect_format, parse_resource
from ig_validator.healthcare.fhir_terminology_client import TerminologyClient
from ig_validator.healthcare.fhir_versions import current_version, package_for_version
from ig_validator.healthcare.validation.engine import ValidationEngine
from ig_validator.healthcare.validation.outcome import ValidationOutcome
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)

# Base FHIR specification the validator is built on
FHIR_SPEC_VERSION = "4.0"


class IGValidator:
    """Validates FHIR resources against the profiles of an implementation guide."""

    def __init__(
        self,
        ig_file: str,
        settings: Optional[ValidatorSettings] = None,
        package_manager: Optional[PackageCacheManager] = None,
        terminology_client: Optional[TerminologyClient] = None,
    ):
        """Build the validator.

        Args:
            ig_file: Implementation guide reference: ``name#version``, a
                package name, a package tarball or folder, or a tarball URL
            settings: Settings to use instead of the environment
            package_manager: Package resolver to use instead of a new one
            terminology_client: Terminology client to use instead of a new one

        Raises:
            ConstructionError: If any construction step fails
        """
        self.settings = settings or get_settings()
        self.ig_file = ig_file
        self._package_manager = package_manager
        self._package_manager_lock = threading.Lock()
        self._registration_lock = threading.Lock()
        self.engine = self._create_engine(terminology_client)

    def _create_engine(self, terminology_client: Optional[TerminologyClient]) -> ValidationEngine:
        fhir_version = current_version(FHIR_SPEC_VERSION)
        core_package = f"{package_for_version(FHIR_SPEC_VERSION)}#{fhir_version}"
        owns_client = terminology_client is None
        client = terminology_client or TerminologyClient.from_settings(self.settings)

        logger.info("validator_building", ig=self.ig_file, core=core_package)
        try:
            engine = ValidationEngine.from_core_package(self.package_manager, core_package)
            engine.load_ig(self.ig_file, recursive=True)
            engine.connect_to_tx_server(client, self.settings.tx_server_url, fhir_version)
            engine.set_native(False)
            engine.set_any_extensions_allowed(True)
            engine.prepare()
        except (IGValidatorError, OSError, ValueError) as e:
            logger.error(
                "validator_build_failed",
                ig=self.ig_file,
                error=str(e),
                error_type=type(e).__name__,
            )
            if owns_client:
                client.close()
            raise ConstructionError(
                f"Cannot build validator for {self.ig_file}: {e}"
            ) from e

        logger.info(
            "validator_ready",
            ig=self.ig_file,
            packages=engine.loaded_packages,
            structures=len(engine.structure_urls()),
        )
        return engine

    @property
    def package_manager(self) -> PackageCacheManager:
        """Package resolver, created on first use and then reused."""
        if self._package_manager is None:
            with self._package_manager_lock:
                if self._package_manager is None:
                    self._package_manager = PackageCacheManager.from_settings(self.settings)
        return self._package_manager

    def get_resources(self) -> List[str]:
        """Resource type names defined by the base specification."""
        return self.engine.resource_names()

    def get_structures(self) -> List[str]:
        """Canonical URLs of every registered StructureDefinition."""
        return self.engine.structure_urls()

    def get_known_igs(self) -> List[str]:
        """Canonical URLs of the guides published in the FHIR IG registry.

        Raises:
            DiscoveryError: If the registry list cannot be fetched
        """
        urls: List[str] = []
        for reference in self.get_known_ig_references():
            if reference.url not in urls:
                urls.append(reference.url)
        return urls

    def get_known_ig_references(self) -> List[KnownIG]:
        """Guides published in the FHIR IG registry.

        Raises:
            DiscoveryError: If the registry list cannot be fetched
        """
        try:
            return self.package_manager.list_known_packages()
        except PackageError as e:
            logger.error("known_igs_failed", error=e.message)
            raise DiscoveryError(f"Cannot list implementation guides: {e.message}") from e

    def load_profile(self, definition: FHIRAbstractResource) -> None:
        """Register a profile, replacing any with the same canonical URL.

        Raises:
            ProfileRegistrationError: If the definition cannot be registered
        """
        with self._registration_lock:
            replaced = self.engine.cache_definition(definition)
        url = getattr(definition, "url", None)
        if replaced is not None:
            logger.warning("profile_overwritten", url=url, previous_source=replaced.source)
        else:
            logger.info("profile_loaded", url=url)

    def load_profile_from_file(self, path: Union[str, Path]) -> None:
        """Read, parse and register a profile stored as JSON or XML.

        Raises:
            ProfileIOError: If the file cannot be read
            ProfileParseError: If the content is not a valid definition
            ProfileRegistrationError: If the definition cannot be registered
        """
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ProfileIOError(f"Cannot read profile {path}: {e}") from e

        fmt = detect_format(data)
        if fmt is None:
            raise ProfileParseError(f"{path} is neither JSON nor XML")
        try:
            definition = parse_resource(data, fmt)
        except ParseError as e:
            raise ProfileParseError(f"Cannot parse profile {path}: {e.message}") from e
        self.load_profile(definition)

    def validate(
        self, resource: Union[bytes, str], profiles: Sequence[str]
    ) -> ValidationOutcome:
        """Validate a JSON resource against the given profile URLs.

        An empty profile list validates against the base definition of the
        resource type only.

        Raises:
            ResourceParseError: If the resource is not valid FHIR JSON
            UnknownProfileError: If a profile is not loaded
            ValidationError: If validation cannot be completed
        """
        if isinstance(resource, str):
            resource = resource.encode("utf-8")
        return self.engine.validate(resource, FhirFormat.JSON, list(profiles))

    def close(self) -> None:
        """Release the HTTP connections."""
        if self.engine.terminology is not None:
            self.engine.terminology.close()
        if self._package_manager is not None:
            self._package_manager.close()

    def __enter__(self) -> "IGValidator":
        """Use as a context manager."""
        return self

    def __exit__(self, *exc_info) -> None:
        """Close on exit."""
        self.close()
