"""Tests for validation outcome types."""

from ig_validator.healthcare.validation.outcome import (
    IssueSeverity,
    IssueType,
    ValidationIssue,
    ValidationOutcome,
)


def issue(severity, message="problem", location="Patient.name"):
    return ValidationIssue(
        severity=severity, code=IssueType.STRUCTURE, location=location, message=message
    )


class TestValidationOutcome:
    """Outcome helpers."""

    def test_empty_outcome_is_valid(self):
        outcome = ValidationOutcome()
        assert outcome.is_valid
        assert outcome.errors == []
        assert outcome.warnings == []

    def test_fatal_counts_as_error(self):
        outcome = ValidationOutcome(
            issues=[issue(IssueSeverity.FATAL), issue(IssueSeverity.WARNING)]
        )
        assert not outcome.is_valid
        assert [i.severity for i in outcome.errors] == [IssueSeverity.FATAL]
        assert [i.severity for i in outcome.warnings] == [IssueSeverity.WARNING]

    def test_information_does_not_invalidate(self):
        outcome = ValidationOutcome(issues=[issue(IssueSeverity.INFORMATION)])
        assert outcome.is_valid
        assert outcome.warnings == []

    def test_issue_order_is_kept(self):
        issues = [
            issue(IssueSeverity.WARNING, "first"),
            issue(IssueSeverity.ERROR, "second"),
            issue(IssueSeverity.INFORMATION, "third"),
        ]
        assert [i.message for i in ValidationOutcome(issues=issues).issues] == [
            "first",
            "second",
            "third",
        ]


class TestOperationOutcome:
    """OperationOutcome rendering."""

    def test_issues_are_rendered(self):
        outcome = ValidationOutcome(issues=[issue(IssueSeverity.ERROR, "Bad name")])
        document = outcome.to_operation_outcome()

        assert document["resourceType"] == "OperationOutcome"
        assert document["issue"] == [
            {
                "severity": "error",
                "code": "structure",
                "diagnostics": "Bad name",
                "location": ["Patient.name"],
                "expression": ["Patient.name"],
                "details": {"text": "Bad name"},
            }
        ]
        assert "text" not in document

    def test_empty_outcome_has_an_informational_issue(self):
        document = ValidationOutcome().to_operation_outcome()
        assert [i["code"] for i in document["issue"]] == ["informational"]

    def test_narrative_names_the_resource(self):
        document = ValidationOutcome().to_operation_outcome(resource_id="example")
        assert "example" in document["text"]["div"]
        assert document["text"]["status"] == "generated"
