"""Validation outcome types.

A validation run produces an ordered list of issues. The outcome can be
rendered as a FHIR OperationOutcome for callers that want the standard
resource shape.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class IssueSeverity(str, Enum):
    """FHIR issue severity levels."""

    FATAL = "fatal"  # Processing could not continue
    ERROR = "error"  # Content is invalid
    WARNING = "warning"  # Content could be improved
    INFORMATION = "information"  # Informational message


class IssueType(str, Enum):
    """FHIR issue type codes used by the validator."""

    STRUCTURE = "structure"
    REQUIRED = "required"
    VALUE = "value"
    INVARIANT = "invariant"
    CODE_INVALID = "code-invalid"
    EXTENSION = "extension"
    NOT_SUPPORTED = "not-supported"
    BUSINESS_RULE = "business-rule"
    PROCESSING = "processing"
    INFORMATIONAL = "informational"


class ValidationIssue(BaseModel):
    """A single problem found in a resource."""

    severity: IssueSeverity
    code: IssueType
    location: str
    message: str

    def to_operation_outcome_issue(self) -> Dict[str, Any]:
        """Convert to FHIR OperationOutcome issue.

        Returns:
            OperationOutcome issue component
        """
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "diagnostics": self.message,
            "location": [self.location],
            "expression": [self.location],
            "details": {"text": self.message},
        }


class ValidationOutcome(BaseModel):
    """Ordered result of validating one resource."""

    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        """Issues of severity error or fatal."""
        return [
            issue
            for issue in self.issues
            if issue.severity in (IssueSeverity.ERROR, IssueSeverity.FATAL)
        ]

    @property
    def warnings(self) -> List[ValidationIssue]:
        """Issues of severity warning."""
        return [i for i in self.issues if i.severity == IssueSeverity.WARNING]

    @property
    def is_valid(self) -> bool:
        """True when there is no error or fatal issue."""
        return not self.errors

    def to_operation_outcome(self, resource_id: Optional[str] = None) -> Dict[str, Any]:
        """Generate FHIR OperationOutcome from the issues.

        Args:
            resource_id: Resource being validated

        Returns:
            OperationOutcome resource
        """
        outcome: Dict[str, Any] = {
            "resourceType": "OperationOutcome",
            "id": f"validation-{uuid4().hex[:8]}",
            "issue": [issue.to_operation_outcome_issue() for issue in self.issues],
        }
        if not self.issues:
            # OperationOutcome.issue is 1..*
            outcome["issue"].append(
                {
                    "severity": IssueSeverity.INFORMATION.value,
                    "code": IssueType.INFORMATIONAL.value,
                    "diagnostics": "No issues detected during validation",
                }
            )

        if resource_id:
            outcome["text"] = {
                "status": "generated",
                "div": (
                    '<div xmlns="http://www.w3.org/1999/xhtml">'
                    f"Validation results for resource {resource_id}</div>"
                ),
            }

        return outcome
