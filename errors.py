"""Error taxonomy shared by the services and the HTTP layer.

Client-caused rejections derive from ``TrackerError`` (a ``ValueError``) and
render with ``status="Fail"``; store faults raise ``InternalFault`` and render
with ``status="error"``.
"""

from typing import Optional


class TrackerError(ValueError):
    status_code = 400
    status = "Fail"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(TrackerError):
    status_code = 400
    default_message = "Validation failed"


class NotFound(TrackerError):
    status_code = 404
    default_message = "Not found"


class Conflict(TrackerError):
    status_code = 409
    default_message = "Conflict"


class Unauthenticated(TrackerError):
    status_code = 401
    default_message = "Access Denied: Invalid Token"


class InternalFault(RuntimeError):
    status_code = 500
    status = "error"

    def __init__(self, message: str = "System Failure") -> None:
        self.message = message
        super().__init__(message)


# Transaction gate


class InvalidType(ValidationFailed):
    default_message = "Valid transaction type is required"


class InvalidAmount(ValidationFailed):
    default_message = "Valid amount is required"


class MissingDescription(ValidationFailed):
    default_message = "Description is required"


class DescriptionTooLong(ValidationFailed):
    default_message = "Description must be less than 500 characters"


class MissingCategory(ValidationFailed):
    default_message = "Category is required"


class CategoryNotFound(ValidationFailed):
    default_message = "Category not found for this user"


class CategoryOwnershipMismatch(ValidationFailed):
    default_message = "Category does not belong to this user"


class CategoryArchived(ValidationFailed):
    default_message = "Category is archived"


class CategoryTypeMismatch(ValidationFailed):
    default_message = "Category type does not match transaction type"


# Budget aggregate


class InvalidPeriod(ValidationFailed):
    default_message = "End date must be after start date"


class EmptyCategories(ValidationFailed):
    default_message = "At least one category is required"


class InvalidAllocation(ValidationFailed):
    default_message = "Each category must include categoryId and allocated amount"


class InvalidCategoryReference(ValidationFailed):
    default_message = "One or more categories are invalid or archived"


class DuplicateCategory(Conflict):
    default_message = "duplicate Categoryid is not allowed"


# Category store


class DuplicateName(Conflict):
    default_message = "Category with this name already exists"
