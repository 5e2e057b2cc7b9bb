"""FHIR NPM package access.

A FHIR package is an NPM-style folder: ``package/package.json`` describes
the package and its dependencies, and the JSON conformance resources sit
next to it. This module reads an extracted package folder, or a plain folder
of definitions, without caring where it came from.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ig_validator.core.exceptions import PackageError, ParseError
from ig_validator.healthcare.fhir_parser import FhirFormat, detect_format, parse_document
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)

SKIPPED_FILES = {
    "package.json",
    ".index.json",
    "validation-summary.json",
    "validation-oo.json",
}


class NpmPackage:
    """An extracted FHIR package on disk."""

    def __init__(self, folder: Path, manifest: Dict[str, Any]):
        """Initialize package.

        Args:
            folder: Folder holding the resource files
            manifest: Parsed package.json content
        """
        self.folder = folder
        self.manifest = manifest

    @classmethod
    def from_folder(cls, path: Path) -> "NpmPackage":
        """Open an extracted package.

        Accepts the cache entry folder (``<name>#<version>``), the inner
        ``package`` folder, or any folder with a ``package.json``.
        """
        for candidate in (path / "package", path):
            manifest_file = candidate / "package.json"
            if manifest_file.is_file():
                try:
                    manifest = json.loads(manifest_file.read_text(encoding="utf-8-sig"))
                except (OSError, json.JSONDecodeError) as e:
                    raise PackageError(
                        f"Unreadable package manifest {manifest_file}: {e}"
                    ) from e
                if not isinstance(manifest, dict) or not manifest.get("name"):
                    raise PackageError(f"Package manifest {manifest_file} has no name")
                return cls(candidate, manifest)
        raise PackageError(f"No package.json found under {path}")

    @classmethod
    def from_definitions_folder(cls, path: Path) -> "NpmPackage":
        """Wrap a folder of loose definition files as an anonymous package."""
        if not path.is_dir():
            raise PackageError(f"{path} is not a folder")
        return cls(path, {"name": path.name, "version": "current", "dependencies": {}})

    @property
    def name(self) -> str:
        """Package id."""
        return str(self.manifest["name"])

    @property
    def version(self) -> str:
        """Package version."""
        return str(self.manifest.get("version", "current"))

    @property
    def package_id(self) -> str:
        """``name#version``."""
        return f"{self.name}#{self.version}"

    @property
    def fhir_versions(self) -> List[str]:
        """FHIR versions the package declares support for."""
        versions = self.manifest.get("fhirVersions") or self.manifest.get(
            "fhir-version-list"
        )
        if versions is None:
            return []
        if isinstance(versions, str):
            return [versions]
        if not isinstance(versions, list):
            raise PackageError(f"{self.package_id}: fhirVersions must be a list")
        return [str(v) for v in versions]

    @property
    def dependencies(self) -> Dict[str, str]:
        """Declared dependencies as ``{name: version}``."""
        deps = self.manifest.get("dependencies") or {}
        if not isinstance(deps, dict):
            raise PackageError(f"{self.package_id}: dependencies must be an object")
        return {
            str(name): str(version)
            for name, version in deps.items()
            if name and version
        }

    @property
    def canonical(self) -> Optional[str]:
        """Canonical base URL of the guide, if declared."""
        return self.manifest.get("canonical") or self.manifest.get("url")

    def iter_resources(self) -> Iterator[Dict[str, Any]]:
        """Yield every conformance resource in the package as FHIR JSON.

        Files that are not FHIR resources are skipped with a debug message.

        Raises:
            PackageError: If a resource file is unreadable or malformed
        """
        for file_path in sorted(self.folder.iterdir()):
            if file_path.is_dir() or file_path.name in SKIPPED_FILES:
                continue
            if file_path.suffix.lower() not in (".json", ".xml"):
                continue
            resource = self._read_resource(file_path)
            if resource is not None:
                yield resource

    def _read_resource(self, file_path: Path) -> Optional[Dict[str, Any]]:
        try:
            data = file_path.read_bytes()
        except OSError as e:
            raise PackageError(f"Cannot read {file_path}: {e}") from e

        fmt = detect_format(data)
        if fmt is None or fmt.value != file_path.suffix.lower().lstrip("."):
            logger.debug("package_file_skipped", file=str(file_path), reason="format")
            return None
        if fmt == FhirFormat.JSON and b'"resourceType"' not in data:
            logger.debug("package_file_skipped", file=str(file_path), reason="not a resource")
            return None
        try:
            return parse_document(data, fmt)
        except ParseError as e:
            raise PackageError(
                f"Malformed resource {file_path.name} in {self.package_id}: {e}"
            ) from e

    def __repr__(self) -> str:
        """Show the package id."""
        return f"NpmPackage({self.package_id!r})"
