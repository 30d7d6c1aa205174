"""
Custom exceptions for RelayChat.

Provides a hierarchy of exceptions that map to HTTP status codes
and include structured error information.
"""

from typing import Any


class RelayChatException(Exception):
    """
    Base exception for all RelayChat errors.

    All custom exceptions should inherit from this class.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional error details
        """
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# HTTP 400 - Configuration Errors
# =============================================================================


class ConfigurationError(RelayChatException):
    """Malformed subscription config or row filter."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"field": field},
        )


# =============================================================================
# HTTP 401 - Authentication Errors
# =============================================================================


class AuthenticationError(RelayChatException):
    """No user session could be resolved."""

    status_code = 401

    def __init__(
        self,
        message: str = "Authentication required",
        code: str = "AUTHENTICATION_REQUIRED",
    ) -> None:
        super().__init__(message=message, code=code)


# =============================================================================
# HTTP 409 - Ownership Conflicts
# =============================================================================


class ChannelInUseError(RelayChatException):
    """A channel key is already held by another consumer of the registry."""

    status_code = 409

    def __init__(self, key: str) -> None:
        super().__init__(
            message=f"Channel {key} is held by another consumer",
            code="CHANNEL_IN_USE",
            details={"key": key},
        )


# =============================================================================
# HTTP 502 - Backing Store Errors
# =============================================================================


class StoreWriteError(RelayChatException):
    """A store upsert or select failed."""

    status_code = 502

    def __init__(
        self,
        table: str,
        operation: str,
        message: str = "Store operation failed",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            message=f"{message} ({operation} on '{table}')",
            code="STORE_WRITE_ERROR",
            details={"table": table, "operation": operation},
        )
        self.original_error = original_error


# =============================================================================
# HTTP 503 - Transport Errors
# =============================================================================


class TransportError(RelayChatException):
    """Realtime channel failed to open, closed, errored or timed out."""

    status_code = 503

    def __init__(self, channel: str, state: str, message: str | None = None) -> None:
        super().__init__(
            message=message or f"Channel '{channel}' is {state}",
            code="TRANSPORT_ERROR",
            details={"channel": channel, "state": state},
        )


class RetryExhaustedError(TransportError):
    """A subscription gave up reconnecting and was removed."""

    def __init__(self, channel: str, attempts: int) -> None:
        super().__init__(
            channel=channel,
            state="REMOVED",
            message=f"Channel '{channel}' failed to reconnect after {attempts} attempts",
        )
        self.code = "RETRY_EXHAUSTED"
        self.details["attempts"] = attempts


class ServiceUnavailableError(RelayChatException):
    """The realtime runtime is not running."""

    status_code = 503

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(message=message, code="SERVICE_UNAVAILABLE")
