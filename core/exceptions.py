"""
Custom exceptions for the classification pipeline.
"""
from typing import Any, Dict, Optional


class ClassificationServiceError(Exception):
    """Base exception for all classification service errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ClassificationServiceError):
    """Raised when a remote response or transaction data fails validation."""
    pass


class RemoteServiceError(ClassificationServiceError):
    """Raised when the remote classifier call fails (network, HTTP status, timeout)."""

    @property
    def status_code(self) -> Optional[int]:
        """HTTP status code of the failed call, if one was received."""
        return self.details.get("status_code")

    @property
    def retryable(self) -> bool:
        """Whether the failure is transient (timeout, connection, 429 or 5xx)."""
        return bool(self.details.get("retryable", False))


class ConfigurationError(ClassificationServiceError):
    """Raised when configuration, thresholds or settings are invalid."""
    pass
