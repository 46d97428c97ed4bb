"""Exceptions and AWS error classification.

Every idempotent-operation decision (ignore a missing resource on delete,
reuse an existing one on create) goes through the predicates here so the
policy lives in one place.
"""

from botocore.exceptions import ClientError

NOT_FOUND_CODES = ("ClusterNotFoundException", "ServiceNotFoundException")
ALREADY_EXISTS_CODES = (
    "EntityAlreadyExists",
    "ResourceExistsException",
    "ResourceAlreadyExistsException",
)


class ClawsterError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ClawsterError):
    pass


class ProfileNotSetError(ClawsterError):
    """Lifecycle operation called before install/configure bound a profile."""

    def __init__(self, operation: str = "this operation"):
        super().__init__(f"Profile name not set; call install() or configure() before {operation}")


class ProvisioningError(ClawsterError):
    pass


class EndpointUnavailableError(ClawsterError):
    pass


class OperationTimeoutError(ClawsterError):
    pass


class StackOperationError(ClawsterError):
    pass


def error_code(e: Exception) -> str:
    """:return: AWS error code of a ClientError, empty string otherwise"""
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "") or ""
    return ""


def is_not_found_error(e: Exception) -> bool:
    code = error_code(e)
    if not code:
        return False
    return (
        "NotFound" in code
        or "NoSuchEntity" in code
        or code == "ResourceNotFoundException"
        or code in NOT_FOUND_CODES
    )


def is_already_exists_error(e: Exception) -> bool:
    code = error_code(e)
    if not code:
        return False
    return "AlreadyExists" in code or code in ALREADY_EXISTS_CODES


def is_duplicate_permission_error(e: Exception) -> bool:
    return error_code(e) == "InvalidPermission.Duplicate"
