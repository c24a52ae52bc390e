"""Domain exceptions raised by the issue, classification and voting services."""

from __future__ import annotations


class CivicTriageError(Exception):
    """Base class for domain errors."""
    pass


class IssueNotFoundError(CivicTriageError):
    """Raised when an issue id does not reference an existing issue."""

    def __init__(self, issue_id: str):
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class IssueValidationError(CivicTriageError):
    """Raised when a submission is missing required fields or has invalid values."""

    def __init__(self, fields: list[str]):
        super().__init__("Please fill all required fields: " + ", ".join(fields))
        self.fields = fields


class InvalidTransitionError(CivicTriageError):
    """Raised when a status change would move an issue backwards."""
    pass


class FeedbackError(CivicTriageError):
    """Raised when feedback is rejected (bad rating or unresolved issue)."""
    pass
