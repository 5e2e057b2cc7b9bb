"""FHIR Package Cache Manager.

Resolves implementation guide references to extracted packages in the local
package cache, downloading them from the package registry when they are not
there yet, and lists the guides published in the FHIR IG registry.

Cache layout follows the shared FHIR convention::

    <cache_dir>/<name>#<version>/package/package.json
"""

import hashlib
import io
import re
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Union

import httpx
from pydantic import BaseModel

from ig_validator.config import ValidatorSettings
from ig_validator.core.exceptions import (
    PackageError,
    PackageNotFoundError,
    RegistryUnavailableError,
)
from ig_validator.healthcare.fhir_package import NpmPackage
from ig_validator.utils.logging import get_logger
from ig_validator.utils.retry import call_with_retry

logger = get_logger(__name__)

PACKAGE_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*(\.[A-Za-z0-9_\-]+)+$")
TARBALL_SUFFIXES = (".tgz", ".tar.gz")


class KnownIG(BaseModel):
    """An implementation guide listed by the IG registry."""

    name: str
    url: str
    package_id: Optional[str] = None


class PackageCacheManager:
    """Local package cache backed by the FHIR package registry."""

    def __init__(
        self,
        cache_dir: Union[str, Path],
        registry_url: str = "https://packages.fhir.org",
        ig_registry_url: str = (
            "https://raw.githubusercontent.com/FHIR/ig-registry/master/fhir-ig-list.json"
        ),
        timeout: float = 60.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize package cache manager.

        Args:
            cache_dir: Root of the local package cache
            registry_url: Package registry base URL
            ig_registry_url: URL of the IG registry guide list
            timeout: HTTP timeout in seconds
            max_retries: Retries for transient network failures
            transport: Optional httpx transport, used by tests
        """
        self.cache_dir = Path(cache_dir).expanduser()
        self.registry_url = registry_url.rstrip("/")
        self.ig_registry_url = ig_registry_url
        self.max_retries = max_retries
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ValidatorSettings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "PackageCacheManager":
        """Build a manager from validator settings."""
        return cls(
            cache_dir=settings.package_cache_dir,
            registry_url=settings.package_registry_url,
            ig_registry_url=settings.ig_registry_url,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def resolve(self, identifier: str) -> NpmPackage:
        """Resolve a package reference.

        Accepted forms: ``name#version``, ``name`` (latest version), a
        local tarball, a local package or definitions folder, or an
        http(s) URL of a package tarball.

        Raises:
            PackageNotFoundError: If nothing matches the reference
            RegistryUnavailableError: If the registry cannot be reached
            PackageError: If the package content is unusable
        """
        identifier = identifier.strip()
        if identifier.startswith(("http://", "https://")):
            return self._load_from_url(identifier)

        path = Path(identifier).expanduser()
        if path.exists():
            return self._load_from_path(path)

        if "#" in identifier:
            name, version = identifier.split("#", 1)
            return self.load_package(name, version)

        if PACKAGE_ID_PATTERN.match(identifier):
            return self.load_package(identifier, self.latest_version(identifier))

        raise PackageNotFoundError(
            f"'{identifier}' is neither a package id nor an existing path or URL"
        )

    def load_package(self, name: str, version: str) -> NpmPackage:
        """Load ``name#version`` from the cache, downloading it if needed."""
        folder = self.cache_dir / f"{name}#{version}"
        if (folder / "package" / "package.json").is_file():
            logger.debug("package_cache_hit", package=f"{name}#{version}")
            return NpmPackage.from_folder(folder)

        logger.info("package_downloading", package=f"{name}#{version}")
        data = self._fetch(f"{self.registry_url}/{name}/{version}", f"{name}#{version}")
        self._install(data, folder)
        return NpmPackage.from_folder(folder)

    def latest_version(self, name: str) -> str:
        """Ask the registry for the latest published version of a package."""
        document = self._fetch_json(f"{self.registry_url}/{name}", name)
        try:
            return str(document["dist-tags"]["latest"])
        except (KeyError, TypeError) as e:
            raise PackageNotFoundError(f"No published version for {name}") from e

    def list_known_packages(self) -> List[KnownIG]:
        """List the guides published in the IG registry.

        Raises:
            RegistryUnavailableError: If the list cannot be fetched or read
        """
        document = self._fetch_json(self.ig_registry_url, "IG registry")
        guides = document.get("guides") if isinstance(document, dict) else None
        if not isinstance(guides, list):
            raise RegistryUnavailableError("IG registry list has no guides")

        known: List[KnownIG] = []
        seen = set()
        for guide in guides:
            if not isinstance(guide, dict):
                continue
            url = guide.get("canonical")
            if not url or url in seen:
                continue
            seen.add(url)
            known.append(
                KnownIG(
                    name=guide.get("name") or url,
                    url=url,
                    package_id=guide.get("npm-name"),
                )
            )
        logger.info("known_igs_listed", count=len(known))
        return known

    def _load_from_path(self, path: Path) -> NpmPackage:
        if path.is_dir():
            if (path / "package.json").is_file() or (
                path / "package" / "package.json"
            ).is_file():
                return NpmPackage.from_folder(path)
            return NpmPackage.from_definitions_folder(path)

        if path.name.endswith(TARBALL_SUFFIXES):
            try:
                data = path.read_bytes()
            except OSError as e:
                raise PackageError(f"Cannot read {path}: {e}") from e
            return self._install_anonymous(data, path.name)

        raise PackageError(f"{path} is not a package folder or tarball")

    def _load_from_url(self, url: str) -> NpmPackage:
        data = self._fetch(url, url)
        return self._install_anonymous(data, url.rsplit("/", 1)[-1] or "package")

    def _install_anonymous(self, data: bytes, label: str) -> NpmPackage:
        digest = hashlib.sha256(data).hexdigest()[:16]
        folder = self.cache_dir / "local" / f"{label}-{digest}"
        if not (folder / "package" / "package.json").is_file():
            self._install(data, folder)
        return NpmPackage.from_folder(folder)

    def _fetch(self, url: str, what: str) -> bytes:
        response = self._get(url, what)
        return response.content

    def _fetch_json(self, url: str, what: str) -> Any:
        response = self._get(url, what)
        try:
            return response.json()
        except ValueError as e:
            raise RegistryUnavailableError(f"{what}: response is not JSON") from e

    def _get(self, url: str, what: str) -> httpx.Response:
        try:
            response = call_with_retry(
                self.client.get, url, max_retries=self.max_retries
            )
        except httpx.TransportError as e:
            raise RegistryUnavailableError(f"Cannot reach {url}: {e}") from e

        if response.status_code == 404:
            raise PackageNotFoundError(f"{what} not found at {url}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RegistryUnavailableError(
                f"{url} answered HTTP {response.status_code}"
            ) from e
        return response

    def _install(self, data: bytes, folder: Path) -> None:
        """Extract a package tarball into ``folder`` atomically."""
        folder.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=folder.parent))
        try:
            self._extract(data, staging)
            if not (staging / "package" / "package.json").is_file():
                raise PackageError(f"Tarball for {folder.name} has no package.json")
            try:
                staging.rename(folder)
            except OSError:
                # Another process installed the same package first
                if not (folder / "package" / "package.json").is_file():
                    raise
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        logger.info("package_installed", folder=str(folder))

    @staticmethod
    def _extract(data: bytes, target: Path) -> None:
        root = target.resolve()
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    name = member.name.removeprefix("./")
                    if not name.startswith("package/"):
                        name = f"package/{name}"
                    destination = (root / name).resolve()
                    if root not in destination.parents:
                        raise PackageError(f"Unsafe path in package: {member.name}")
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    with source, open(destination, "wb") as out:
                        shutil.copyfileobj(source, out)
        except (tarfile.TarError, EOFError, OSError) as e:
            raise PackageError(f"Cannot extract package: {e}") from e
