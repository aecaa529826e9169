"""Classification of botocore errors into the provisioning taxonomy."""

from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

#: Error codes meaning "the thing you asked about does not exist".
NOT_FOUND_CODES = frozenset({
    "ResourceNotFoundException",
    "FileSystemNotFound",
    "InvalidGroup.NotFound",
    "InvalidGroupId.NotFound",
    "InvalidPermission.NotFound",
    "LoadBalancerNotFound",
    "NoSuchEntity",
})

#: Error codes meaning "the thing you asked to create is already there".
ALREADY_EXISTS_CODES = frozenset({
    "ResourceInUseException",
    "InvalidGroup.Duplicate",
    "InvalidPermission.Duplicate",
    "EntityAlreadyExists",
    "EntityAlreadyExistsException",
    "DuplicateLoadBalancerName",
})

#: Error codes worth retrying: throttling and provider-side blips.
TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "ServerException",
})


def error_code(exc: BaseException) -> str:
    """Return the AWS error code of a :class:`ClientError`, else ``""``."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in NOT_FOUND_CODES


def is_already_exists(exc: BaseException) -> bool:
    return error_code(exc) in ALREADY_EXISTS_CODES


def is_transient(exc: BaseException) -> bool:
    """True for throttling codes and for connection-level botocore errors."""
    if isinstance(exc, ClientError):
        return error_code(exc) in TRANSIENT_CODES
    return isinstance(exc, BotoCoreError)
