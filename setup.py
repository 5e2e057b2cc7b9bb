#!/usr/bin/env python
"""Setup configuration for the FHIR Implementation Guide Validator."""

from setuptools import find_packages, setup

setup(
    name="ig-validator",
    version="0.1.0",
    description="Validates FHIR resources against implementation guide profiles",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.0.0",
        "fhirclient>=4.1.0",
        "fhirpathpy>=2.0.0",
        "httpx>=0.25.0",
        "tenacity>=8.2.0",
        "structlog>=23.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
)
