"""FHIR packages, parsing, terminology and validation."""
