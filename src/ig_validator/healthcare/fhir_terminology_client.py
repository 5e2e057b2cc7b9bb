"""FHIR Terminology Client.

Connection to a remote FHIR terminology server, used to check codes that
cannot be resolved from the locally loaded value sets and code systems.
The connection is opened once and shared by every validation.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel

from ig_validator.config import ValidatorSettings
from ig_validator.core.exceptions import TerminologyError
from ig_validator.healthcare.fhir_versions import release_path, versions_match
from ig_validator.utils.logging import get_logger
from ig_validator.utils.retry import call_with_retry

logger = get_logger(__name__)

# Hosts that serve every FHIR release under a per-release path (/r4, /r5...)
MULTI_RELEASE_HOSTS = {"tx.fhir.org"}

FHIR_JSON = "application/fhir+json"


class CodeValidation(BaseModel):
    """Result of a $validate-code call."""

    valid: bool
    message: Optional[str] = None
    display: Optional[str] = None


class TerminologyClient:
    """Client for a FHIR terminology server."""

    def __init__(
        self,
        timeout: float = 60.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize terminology client.

        Args:
            timeout: HTTP timeout in seconds
            max_retries: Retries for transient network failures
            transport: Optional httpx transport, used by tests
        """
        self.max_retries = max_retries
        self.base_url: Optional[str] = None
        self.capabilities: Dict[str, Any] = {}
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": FHIR_JSON},
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ValidatorSettings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "TerminologyClient":
        """Build a client from validator settings."""
        return cls(
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            transport=transport,
        )

    @property
    def connected(self) -> bool:
        """Whether connect() succeeded."""
        return self.base_url is not None

    def connect(self, endpoint: str, fhir_version: str) -> "TerminologyClient":
        """Connect to the server and check it speaks the right FHIR release.

        Args:
            endpoint: Terminology server URL
            fhir_version: FHIR publication version, e.g. "4.0.1"

        Raises:
            TerminologyError: If the server is unreachable or incompatible
        """
        base_url = self.server_base(endpoint, fhir_version)
        response = self._request("GET", f"{base_url}/metadata")
        capabilities = self._json(response)

        if capabilities.get("resourceType") != "CapabilityStatement":
            raise TerminologyError(
                f"{base_url}/metadata did not return a CapabilityStatement"
            )
        server_version = capabilities.get("fhirVersion")
        if server_version and not versions_match(server_version, fhir_version):
            raise TerminologyError(
                f"Terminology server speaks FHIR {server_version}, "
                f"expected {fhir_version}"
            )

        self.base_url = base_url
        self.capabilities = capabilities
        logger.info(
            "terminology_connected",
            url=base_url,
            software=(capabilities.get("software") or {}).get("name"),
        )
        return self

    @staticmethod
    def server_base(endpoint: str, fhir_version: str) -> str:
        """Work out the base URL for a release on the given endpoint."""
        base_url = endpoint.rstrip("/")
        suffix = f"/{release_path(fhir_version)}"
        if urlparse(base_url).hostname in MULTI_RELEASE_HOSTS and not base_url.endswith(
            suffix
        ):
            base_url += suffix
        return base_url

    def validate_code(
        self,
        system: Optional[str],
        code: str,
        display: Optional[str] = None,
        value_set: Optional[str] = None,
    ) -> CodeValidation:
        """Check a code, optionally for membership of a value set.

        Raises:
            TerminologyError: If the server cannot answer
        """
        if self.base_url is None:
            raise TerminologyError("Terminology client is not connected")

        coding: Dict[str, Any] = {"code": code}
        if system:
            coding["system"] = system
        if display:
            coding["display"] = display
        parameters: List[Dict[str, Any]] = [{"name": "coding", "valueCoding": coding}]
        if value_set:
            parameters.insert(0, {"name": "url", "valueUri": value_set})
        target = "ValueSet" if value_set else "CodeSystem"

        response = self._request(
            "POST",
            f"{self.base_url}/{target}/$validate-code",
            json={"resourceType": "Parameters", "parameter": parameters},
            headers={"Content-Type": FHIR_JSON},
        )
        document = self._json(response)
        if document.get("resourceType") != "Parameters":
            raise TerminologyError(
                f"$validate-code returned {document.get('resourceType')}"
            )

        values = {
            p.get("name"): next(
                (v for k, v in p.items() if k.startswith("value")), None
            )
            for p in document.get("parameter", [])
            if isinstance(p, dict)
        }
        return CodeValidation(
            valid=values.get("result") is True,
            message=values.get("message"),
            display=values.get("display"),
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = call_with_retry(
                self.client.request, method, url, max_retries=self.max_retries, **kwargs
            )
        except httpx.TransportError as e:
            raise TerminologyError(f"Cannot reach terminology server {url}: {e}") from e

        if response.is_error:
            raise TerminologyError(
                f"Terminology server answered HTTP {response.status_code} for {url}"
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            document = response.json()
        except ValueError as e:
            raise TerminologyError("Terminology server returned invalid JSON") from e
        if not isinstance(document, dict):
            raise TerminologyError("Terminology server returned a non-object")
        return document
