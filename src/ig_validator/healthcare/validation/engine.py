"""Validation engine.

Owns the definition registry built from FHIR packages, the terminology
connection and the engine policy flags. Packages are loaded before
``prepare()``; after that the engine validates resources and still accepts
new definitions, which are expanded on registration.
"""

from typing import Iterable, List, Optional, Sequence, Set

from fhirclient.models.fhirabstractbase import FHIRValidationError
from fhirclient.models.fhirabstractresource import FHIRAbstractResource

from ig_validator.core.exceptions import (
    PackageError,
    ParseError,
    ProfileRegistrationError,
    ResourceParseError,
    SnapshotError,
)
from ig_validator.healthcare.fhir_package import NpmPackage
from ig_validator.healthcare.fhir_package_manager import PackageCacheManager
from ig_validator.healthcare.fhir_parser import FhirFormat, parse_document
from ig_validator.healthcare.fhir_terminology_client import TerminologyClient
from ig_validator.healthcare.fhir_versions import is_core_package, versions_match
from ig_validator.healthcare.validation.bindings import BindingChecker
from ig_validator.healthcare.validation.context import (
    CANONICAL_TYPES,
    CanonicalEntry,
    WorkerContext,
    strip_version,
)
from ig_validator.healthcare.validation.instance_validator import InstanceValidator
from ig_validator.healthcare.validation.outcome import ValidationOutcome
from ig_validator.healthcare.validation.snapshot import check_cardinality, generate_snapshot
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)


class ValidationEngine:
    """FHIR validation engine over a registry of loaded definitions."""

    def __init__(self, package_manager: PackageCacheManager, fhir_version: str):
        """Initialize an empty engine.

        Args:
            package_manager: Resolver used for IG and dependency packages
            fhir_version: FHIR publication version, e.g. "4.0.1"
        """
        self.package_manager = package_manager
        self.fhir_version = fhir_version
        self.context = WorkerContext()
        self.loaded_packages: List[str] = []
        self.terminology: Optional[TerminologyClient] = None
        self._native = False
        self._any_extensions_allowed = True
        self._prepared = False

    @classmethod
    def from_core_package(
        cls, package_manager: PackageCacheManager, package_id: str
    ) -> "ValidationEngine":
        """Create an engine with the base specification package loaded.

        Args:
            package_manager: Package resolver
            package_id: Core package reference, e.g. "hl7.fhir.r4.core#4.0.1"
        """
        name, _, version = package_id.partition("#")
        package = package_manager.load_package(name, version)
        engine = cls(package_manager, version)
        engine.load_package(package, recursive=False)
        return engine

    @property
    def native(self) -> bool:
        """Whether native validation is enabled. Always False."""
        return self._native

    @property
    def any_extensions_allowed(self) -> bool:
        """Whether unknown extensions are accepted with a warning."""
        return self._any_extensions_allowed

    @property
    def prepared(self) -> bool:
        """Whether prepare() has run."""
        return self._prepared

    def load_ig(self, identifier: str, recursive: bool = True) -> NpmPackage:
        """Load an implementation guide package, dependencies first.

        Raises:
            PackageError: If the package or one of its dependencies cannot
                be resolved, read, or targets another FHIR release
        """
        package = self.package_manager.resolve(identifier)
        self.load_package(package, recursive=recursive)
        return package

    def load_package(
        self,
        package: NpmPackage,
        recursive: bool = True,
        _seen: Optional[Set[str]] = None,
    ) -> None:
        """Register the definitions of an already resolved package."""
        seen = _seen if _seen is not None else set()
        if package.package_id in self.loaded_packages or package.package_id in seen:
            return
        seen.add(package.package_id)

        if package.fhir_versions and not any(
            versions_match(v, self.fhir_version) for v in package.fhir_versions
        ):
            raise PackageError(
                f"{package.package_id} targets FHIR {', '.join(package.fhir_versions)}, "
                f"not {self.fhir_version}"
            )

        if recursive:
            for name, version in package.dependencies.items():
                if is_core_package(name):
                    if not versions_match(version, self.fhir_version):
                        raise PackageError(
                            f"{package.package_id} depends on {name}#{version}, "
                            f"which is not FHIR {self.fhir_version}"
                        )
                    continue
                dependency = self.package_manager.load_package(name, version)
                self.load_package(dependency, recursive=True, _seen=seen)

        entries = [
            CanonicalEntry(document, package.package_id)
            for document in package.iter_resources()
            if document.get("resourceType") in CANONICAL_TYPES and document.get("url")
        ]
        self.context.cache_entries(entries)
        self.loaded_packages.append(package.package_id)
        logger.info("package_loaded", package=package.package_id, definitions=len(entries))

        if self._prepared:
            self._generate_snapshots(entries)

    def connect_to_tx_server(
        self, client: TerminologyClient, url: str, fhir_version: str
    ) -> None:
        """Connect the terminology client used for code checks.

        Raises:
            TerminologyError: If the server cannot be used
        """
        self.terminology = client.connect(url, fhir_version)

    def set_native(self, enabled: bool) -> None:
        """Set native validation mode. Only the disabled mode exists."""
        if enabled:
            raise ValueError("Native validation is not supported")
        self._native = False

    def set_any_extensions_allowed(self, allowed: bool) -> None:
        """Choose between warnings and errors for unknown extensions."""
        self._any_extensions_allowed = allowed

    def prepare(self) -> None:
        """Generate missing snapshots and make the engine ready to validate."""
        unusable = []
        for entry in self.context.view.structures.values():
            if not entry.has_snapshot:
                continue
            try:
                check_cardinality(entry.document)
            except SnapshotError as e:
                logger.warning("snapshot_failed", url=entry.url, error=e.message)
                document = {k: v for k, v in entry.document.items() if k != "snapshot"}
                unusable.append(CanonicalEntry(document, entry.source))
        if unusable:
            self.context.cache_entries(unusable)

        missing = [
            entry
            for entry in self.context.view.structures.values()
            if not entry.has_snapshot
        ]
        self._generate_snapshots(missing)
        self._prepared = True
        logger.info(
            "engine_prepared",
            structures=len(self.context.view.structures),
            value_sets=len(self.context.view.value_sets),
            code_systems=len(self.context.view.code_systems),
        )

    def _generate_snapshots(self, entries: Iterable[CanonicalEntry]) -> None:
        pending = [
            e for e in entries if e.resource_type == "StructureDefinition" and not e.has_snapshot
        ]
        while pending:
            progress = False
            for entry in list(pending):
                base = self.context.view.structure(entry.document.get("baseDefinition") or "")
                if base is not None and base in pending:
                    continue
                pending.remove(entry)
                progress = True
                try:
                    document = generate_snapshot(entry.document, self.context.view)
                except SnapshotError as e:
                    logger.warning("snapshot_failed", url=entry.url, error=e.message)
                    continue
                self.context.cache_entries([CanonicalEntry(document, entry.source)])
            if not progress:
                for entry in pending:
                    logger.warning(
                        "snapshot_failed", url=entry.url, error="circular baseDefinition"
                    )
                break

    def cache_definition(
        self, definition: FHIRAbstractResource, source: str = "runtime"
    ) -> Optional[CanonicalEntry]:
        """Register a definition under its canonical URL.

        Returns:
            The entry that was replaced, if the URL was already registered

        Raises:
            ProfileRegistrationError: If the definition cannot be registered
        """
        try:
            document = definition.as_json()
        except FHIRValidationError as e:
            raise ProfileRegistrationError(f"Definition is not valid: {e}") from e

        resource_type = document.get("resourceType")
        if resource_type not in CANONICAL_TYPES:
            raise ProfileRegistrationError(f"Cannot register {resource_type} resources")
        if not document.get("url"):
            raise ProfileRegistrationError(f"{resource_type} has no canonical url")

        entry = CanonicalEntry(document, source)
        if resource_type == "StructureDefinition" and not entry.has_snapshot and self._prepared:
            try:
                entry = CanonicalEntry(
                    generate_snapshot(document, self.context.view), source
                )
            except SnapshotError as e:
                raise ProfileRegistrationError(
                    f"Cannot generate snapshot for {document['url']}: {e.message}"
                ) from e
        elif entry.has_snapshot:
            try:
                check_cardinality(document)
            except SnapshotError as e:
                raise ProfileRegistrationError(
                    f"Unusable snapshot in {document['url']}: {e.message}"
                ) from e

        replaced = self.context.cache_entries([entry])
        return replaced.get(strip_version(entry.url))

    def validate(
        self, data: bytes, fmt: FhirFormat, profiles: Sequence[str]
    ) -> ValidationOutcome:
        """Validate serialized resource content against ``profiles``.

        Raises:
            RuntimeError: If the engine was not prepared
            ResourceParseError: If the content cannot be parsed
            UnknownProfileError: If a requested profile is not loaded
            ValidationError: If validation cannot be completed
        """
        if not self._prepared:
            raise RuntimeError("ValidationEngine.prepare() must be called before validate()")
        try:
            resource = parse_document(data, fmt)
        except ParseError as e:
            raise ResourceParseError(f"Resource could not be parsed: {e.message}") from e

        view = self.context.view
        validator = InstanceValidator(
            view,
            BindingChecker(view, self.terminology),
            any_extensions_allowed=self._any_extensions_allowed,
        )
        outcome = ValidationOutcome(issues=validator.validate(resource, profiles))
        logger.info(
            "resource_validated",
            resource_type=resource.get("resourceType"),
            profiles=list(profiles),
            errors=len(outcome.errors),
            warnings=len(outcome.warnings),
        )
        return outcome

    def resource_names(self) -> List[str]:
        """Resource types defined by the loaded base specification."""
        return self.context.view.resource_names()

    def structure_urls(self) -> List[str]:
        """Canonical URLs of every registered StructureDefinition."""
        return [entry.url for entry in self.context.view.structures.values()]
