"""Healthcare Validation Module.

This module validates FHIR resource instances against StructureDefinition
profiles loaded from implementation guide packages, and reports the result
as an ordered list of issues.
"""

from .engine import ValidationEngine
from .outcome import IssueSeverity, IssueType, ValidationIssue, ValidationOutcome

__all__ = [
    "ValidationEngine",
    "IssueSeverity",
    "IssueType",
    "ValidationIssue",
    "ValidationOutcome",
]
