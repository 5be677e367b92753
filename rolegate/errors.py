"""
Error taxonomy for rolegate.

Every mutating operation raises one of these on the first violated
precondition, before the Store or in-memory state is touched. Query
operations never raise them for unknown roles or resources.
"""

from typing import Optional


class RBACError(Exception):
    """Base error with an optional machine-readable code."""

    code = "rbac_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class AlreadyExists(RBACError):
    code = "already_exists"


class NotFound(RBACError):
    code = "not_found"


class RoleNotFound(NotFound):
    code = "role_not_found"


class ParentNotFound(NotFound):
    code = "parent_not_found"


class ExcludeNotFound(NotFound):
    code = "exclude_not_found"


class ResourceNotFound(NotFound):
    code = "resource_not_found"


class HasDependents(RBACError):
    code = "has_dependents"


class TooManyUsers(RBACError):
    code = "too_many_users"


class ConflictingAssociation(RBACError):
    code = "conflicting_association"


class NotSubsetOfParent(RBACError):
    code = "not_subset_of_parent"


class DependentStillAllowed(RBACError):
    code = "dependent_still_allowed"


class InvalidArgument(RBACError, ValueError):
    code = "invalid_argument"


class StoreError(RBACError):
    """A Store call failed; in-memory state was left unchanged."""

    code = "store_error"

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
