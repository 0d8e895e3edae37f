"""
Error taxonomy for the Security Hub enroller.

Only OrganizationUnavailable and ConfigurationError abort a run. Everything
else is raised inside one account's processing and recorded as a failed
outcome by the reconciler or the coordinator.
"""

from botocore.exceptions import ClientError

# Codes that mean "the thing you asked for is already true"
ALREADY_IN_DESIRED_STATE_CODES = {
    "ResourceConflictException",
}

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "LimitExceededException",
}


class EnrollerError(Exception):
    """Base class for every error raised by the enroller."""


class ConfigurationError(EnrollerError):
    """Settings are missing or invalid."""


class OrganizationUnavailable(EnrollerError):
    """The organization API could not be read. Fatal for the current run."""


class AssumeRoleDenied(EnrollerError):
    """The cross-account role could not be assumed in the target account."""

    def __init__(self, account_id: str, role_name: str, reason: str = ""):
        self.account_id = account_id
        self.role_name = role_name
        self.reason = reason
        super().__init__(
            f"Could not assume {role_name} in {account_id}: {reason or 'denied'}"
        )


class LeaseExpired(EnrollerError):
    """A credential lease was used after its validity window."""


class ServiceApiThrottled(EnrollerError):
    """An API call was still throttled after the last retry attempt."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} throttled after {attempts} attempts")


class InvitationConflict(EnrollerError):
    """The invitation could not be accepted for this administrator."""


def error_code(error: ClientError) -> str:
    """Return the AWS error code carried by a ClientError."""
    return error.response.get("Error", {}).get("Code", "")


def is_throttling(error: ClientError) -> bool:
    code = error_code(error)
    return code in THROTTLING_CODES or code.startswith("Throttling")


def is_already_in_desired_state(error: ClientError) -> bool:
    """True when an error only says the requested state already holds.

    Security Hub reports an already-enabled hub with ResourceConflictException
    and some member operations with an "already" message on
    InvalidInputException.
    """
    code = error_code(error)
    if code in ALREADY_IN_DESIRED_STATE_CODES:
        return True
    message = error.response.get("Error", {}).get("Message", "").lower()
    return code == "InvalidInputException" and "already" in message
