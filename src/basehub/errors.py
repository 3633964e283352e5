"""Error handling module for basehub.

This module defines error codes, exception classes, and response models.
Errors carry no transport semantics; a consuming layer maps codes to its
own protocol.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Recovery policy:
- Only instance creation rolls back automatically.
- start/stop/delete failures surface as-is for the caller to retry.
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    PORTS_EXHAUSTED = "PORTS_EXHAUSTED"
    CREDENTIAL_INVALID = "CREDENTIAL_INVALID"
    EXTERNAL_TOOL_FAILED = "EXTERNAL_TOOL_FAILED"
    RUNTIME_UNAVAILABLE = "RUNTIME_UNAVAILABLE"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class BaseHubError(Exception):
    """Base exception for basehub.

    All basehub-specific exceptions inherit from this class so callers can
    handle the whole taxonomy in one place.

    Attributes:
        code: The error code from ErrorCode enum.
        message: Human-readable error message.
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class ValidationError(BaseHubError):
    """Bad input, duplicate name or instance ceiling reached.

    Always raised before any state is mutated.
    """

    def __init__(self, message: str = "Validation failed") -> None:
        super().__init__(ErrorCode.VALIDATION_FAILED, message)


class InstanceNotFoundError(BaseHubError):
    """Instance id is not in the registry."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message)


class ResourceExhaustionError(BaseHubError):
    """No free port left in a service range."""

    def __init__(self, message: str = "No free port available") -> None:
        super().__init__(ErrorCode.PORTS_EXHAUSTED, message)


class CredentialError(BaseHubError):
    """A freshly signed token failed verification."""

    def __init__(self, message: str = "Credential verification failed") -> None:
        super().__init__(ErrorCode.CREDENTIAL_INVALID, message)


class ExternalToolError(BaseHubError):
    """Provisioning or compose tooling failed.

    Covers a missing prerequisite, a non-zero exit, a timeout, an output
    overflow and missing artifacts after a reported success.
    """

    def __init__(
        self,
        message: str = "External tool failed",
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        instance_id: str | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.instance_id = instance_id
        super().__init__(ErrorCode.EXTERNAL_TOOL_FAILED, message)


class RuntimeUnavailableError(BaseHubError):
    """Container runtime cannot be reached."""

    def __init__(self, message: str = "Container runtime unavailable") -> None:
        super().__init__(ErrorCode.RUNTIME_UNAVAILABLE, message)


class PersistenceError(BaseHubError):
    """Durable store write failed. Never swallowed."""

    def __init__(self, message: str = "Failed to persist instance registry") -> None:
        super().__init__(ErrorCode.PERSISTENCE_FAILED, message)
