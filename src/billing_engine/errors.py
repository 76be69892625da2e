"""Typed failures raised and returned by the billing engine."""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing engine failures."""

    code = "BILLING_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(BillingError):
    """Input is missing a required field or carries an invalid value."""

    code = "VALIDATION_ERROR"


class InvalidCategoryError(ValidationError):
    """Time entry category is not one of the known categories."""

    code = "INVALID_CATEGORY"

    def __init__(self, category: Any):
        self.category = category
        super().__init__(
            f"Invalid entry category '{category}'",
            {"entry_category": category},
        )


class ConflictError(BillingError):
    """A concurrent writer won the race for the same scope key."""

    code = "CONFLICT"


class AuthorizationError(BillingError):
    """The write is not permitted against the target scope."""

    code = "FORBIDDEN"


class ProjectLockedError(AuthorizationError):
    """Adjustment write attempted against a project whose end date has passed."""

    code = "PROJECT_LOCKED"

    def __init__(self, project_id: Any, end_date: Any):
        self.project_id = project_id
        self.end_date = end_date
        super().__init__(
            f"Project {project_id} ended on {end_date} and is locked for adjustments",
            {"project_id": str(project_id), "end_date": str(end_date)},
        )


class NotFoundError(BillingError):
    """Referenced timesheet, project, user or record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": str(entity_id)},
        )
