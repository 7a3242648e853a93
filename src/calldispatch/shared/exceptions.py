"""
Custom exceptions for the application.
"""

from typing import Any
from uuid import UUID


class AppError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, code: str = "APP_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(AppError):
    """Requested resource does not exist."""

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message, code)


class CallNotFoundError(NotFoundError):
    """Call not found."""

    def __init__(self, call_id: UUID | str) -> None:
        super().__init__(f"Call with ID {call_id} not found", "CALL_NOT_FOUND")
        self.call_id = call_id


class BatchNotFoundError(NotFoundError):
    """Batch not found."""

    def __init__(self, batch_id: UUID | str) -> None:
        super().__init__(f"Batch with ID {batch_id} not found", "BATCH_NOT_FOUND")
        self.batch_id = batch_id


class ValidationError(AppError):
    """Validation error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "VALIDATION_ERROR")


class ConfigurationMissingError(AppError):
    """A required provider setting (e.g. the API key) is not configured."""

    def __init__(self, setting: str) -> None:
        super().__init__(f"{setting} is not configured", "CONFIGURATION_MISSING")
        self.setting = setting


class ProviderUnavailableError(AppError):
    """Network failure or non-2xx answer from the voice provider."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "PROVIDER_UNAVAILABLE")
        self.status_code = status_code
        self.retryable = retryable
        self.provider_response = provider_response or {}


class UnknownCallIdentityError(AppError):
    """An inbound event cannot be resolved to any known call."""

    def __init__(self, identifiers: dict[str, Any]) -> None:
        super().__init__(
            f"No call matches event identifiers {identifiers}",
            "UNKNOWN_CALL_IDENTITY",
        )
        self.identifiers = identifiers


class IllegalTransitionError(AppError):
    """Attempted a status change the call lifecycle does not allow."""

    def __init__(self, current_status: Any, target_status: Any) -> None:
        super().__init__(
            f"Cannot transition call from '{current_status.value}' to '{target_status.value}'",
            "ILLEGAL_TRANSITION",
        )
        self.current_status = current_status
        self.target_status = target_status
