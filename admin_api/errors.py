"""
errors.py

Exception types shared by the migration scripts, plus the single table of
user-error messages that are known to be harmless duplicates.
"""

from __future__ import annotations


class MigrationError(RuntimeError):
    """Base class for every failure raised by the migration scripts."""


class TransportError(MigrationError):
    """HTTP failure, network failure or top-level GraphQL `errors` payload."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class UserErrorsError(MigrationError):
    """A mutation answered HTTP 200 but carried a non-empty `userErrors` list."""

    def __init__(self, operation: str, errors: list):
        self.operation = operation
        self.errors = errors
        messages = "; ".join(_format_error(e) for e in errors)
        super().__init__(f"{operation} userErrors: {messages}")


class ResolutionError(MigrationError):
    """A reference had to resolve to a target ID and did not."""


class PreconditionSkip(MigrationError):
    """The record cannot be migrated as-is and is skipped, never half-written."""


# (operation, message substring). A userErrors list made up only of matching
# messages is an idempotent duplicate and counts as success.
BENIGN_USER_ERRORS = [
    ("companyLocationAssignRoles", "already been assigned a role"),
]

OK = "ok"
BENIGN = "benign"
FAILURE = "failure"


def _format_error(error) -> str:
    if not isinstance(error, dict):
        return str(error)
    field = error.get("field")
    message = error.get("message", "")
    if field:
        path = ".".join(str(part) for part in field) if isinstance(field, list) else str(field)
        return f"{path}: {message}"
    return message


def is_benign(operation: str, message: str) -> bool:
    return any(
        op == operation and substring in (message or "")
        for op, substring in BENIGN_USER_ERRORS
    )


def classify_user_errors(operation: str, errors: list | None) -> str:
    """Return OK for no errors, BENIGN when every error is a known duplicate, else FAILURE."""
    if not errors:
        return OK
    if all(is_benign(operation, (e or {}).get("message", "")) for e in errors):
        return BENIGN
    return FAILURE


def check_user_errors(operation: str, errors: list | None) -> bool:
    """
    Raise UserErrorsError unless the list is empty or fully benign.
    Returns True when the errors were swallowed as benign.
    """
    verdict = classify_user_errors(operation, errors)
    if verdict == FAILURE:
        raise UserErrorsError(operation, errors)
    return verdict == BENIGN
