"""Mock Services Package for the IG validator tests.

Fakes stand in for the external services only: the terminology server and
the package registries. Packages and definitions are real files built in a
temporary package cache.
"""

from .fhir_services import MockPackageRegistry, MockTerminologyServer

__all__ = ["MockPackageRegistry", "MockTerminologyServer"]
