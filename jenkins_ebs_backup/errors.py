"""
Error classes for the Jenkins backup tooling.

Gateway errors are classified from the provider's own error codes, never by
matching message text. Only TransientError is eligible for a retry, and that
retry belongs to the gateway layer.
"""

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)


class BackupToolError(Exception):
    """Base error for the deployment and recovery tools."""
    pass


class ValidationError(BackupToolError):
    """Bad operator input. Raised before anything reaches AWS."""

    def __init__(self, field, rule, value=None, message=None):
        self.field = field
        self.rule = rule
        self.value = value
        super().__init__(message or f"{field}: {rule} check failed for {value!r}")


class GatewayError(BackupToolError):
    """An AWS call failed and the failure is terminal."""

    def __init__(self, message, code=None, operation=None):
        self.code = code
        self.operation = operation
        super().__init__(message)

    @property
    def kind(self):
        return type(self).__name__


class NotFoundError(GatewayError):
    pass


class AccessDeniedError(GatewayError):
    pass


class TransientError(GatewayError):
    """Throttling, service hiccups, dropped connections."""
    pass


class WaitTimeoutError(GatewayError):
    """A waiter ran out of attempts or hit a failure state."""
    pass


class ConflictError(GatewayError):
    """The resource exists already or is in a state that blocks the call."""
    pass


class SnapshotNotReadyError(BackupToolError):
    """Snapshot exists but is not in the 'completed' state."""

    def __init__(self, snapshot_id, state):
        self.snapshot_id = snapshot_id
        self.state = state
        super().__init__(f"Snapshot {snapshot_id} is not in 'completed' state: {state}")


class StageFailure(BackupToolError):
    """An orchestration stopped at a given stage. Nothing is rolled back."""

    def __init__(self, stage, cause, remediation=()):
        self.stage = stage
        self.cause = cause
        self.remediation = tuple(remediation)
        super().__init__(f"{stage.value} failed: {type(cause).__name__}: {cause}")


class RecoveryFailed(StageFailure):

    def __init__(self, stage, cause, volume=None, instance=None, remediation=()):
        self.volume = volume
        self.instance = instance
        super().__init__(stage, cause, remediation)


class DeploymentFailed(StageFailure):
    pass


NOT_FOUND_CODES = {
    "ResourceNotFoundException",
    "NoSuchEntity",
    "StackNotFoundException",
}

ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "AuthFailure",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "OptInRequired",
    "SignatureDoesNotMatch",
}

TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "Unavailable",
    "InternalError",
    "InternalFailure",
    "InsufficientInstanceCapacity",
}

CONFLICT_CODES = {
    "AlreadyExistsException",
    "IncorrectState",
    "IncorrectInstanceState",
    "VolumeInUse",
    "InvalidSnapshot.InUse",
    "ResourceConflictException",
    "TokenAlreadyExistsException",
    "IdempotentParameterMismatch",
}

# botocore's reasons for a waiter that ran out of attempts or reached a failure state
WAITER_EXHAUSTED_REASONS = ("Max attempts exceeded", "Waiter encountered a terminal failure state")

CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def error_class_for_code(code):
    """Map an AWS error code onto the error taxonomy."""
    if not code:
        return GatewayError
    if code in ACCESS_DENIED_CODES:
        return AccessDeniedError
    if code in TRANSIENT_CODES:
        return TransientError
    if code in CONFLICT_CODES:
        return ConflictError
    # EC2 uses dotted codes such as InvalidSnapshot.NotFound, InvalidSubnetID.NotFound
    if code in NOT_FOUND_CODES or code.endswith(".NotFound"):
        return NotFoundError
    return GatewayError


def classify(exc, operation=None):
    """
    Turn a botocore exception into a GatewayError subclass.

    Args:
        exc (Exception): ClientError, WaiterError or BotoCoreError raised by boto3.
        operation (str): The gateway operation that was running.

    Returns:
        GatewayError: The classified error, ready to be raised from the original.
    """
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, WaiterError):
        reason = exc.kwargs.get("reason") or ""
        error = (exc.last_response or {}).get("Error") or {}
        # A poll that came back with a provider error keeps that error's class
        if error.get("Code") and not reason.startswith(WAITER_EXHAUSTED_REASONS):
            code = error["Code"]
            return error_class_for_code(code)(error.get("Message") or reason, code=code, operation=operation)
        return WaitTimeoutError(f"{operation or exc.kwargs.get('name')}: {exc.kwargs.get('reason', exc)}",
                                code="WaiterError", operation=operation)
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code")
        message = error.get("Message") or str(exc)
        return error_class_for_code(code)(message, code=code, operation=operation)
    if isinstance(exc, CONNECTION_ERRORS):
        return TransientError(str(exc), code=type(exc).__name__, operation=operation)
    if isinstance(exc, BotoCoreError):
        return GatewayError(str(exc), code=type(exc).__name__, operation=operation)
    return GatewayError(str(exc), operation=operation)
