"""
Error taxonomy for the KYC service layer.

Validation problems are never raised; they are returned as ValidationResult data.
Everything here is raised by collaborators and the submission sink, and caught at
the wizard step-action boundary or mapped to HTTP responses by the API.
"""

from typing import List, Optional


class KYCError(Exception):
    """Base class. code is stable and safe to expose to clients."""

    code = "KYC_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


class NotFoundError(KYCError):
    code = "NOT_FOUND"


class ExpiredError(KYCError):
    code = "OTP_EXPIRED"


class MaxAttemptsExceededError(KYCError):
    code = "MAX_ATTEMPTS_EXCEEDED"


class MismatchError(KYCError):
    code = "INVALID_OTP"

    def __init__(self, message: str, remaining_attempts: int):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["remaining_attempts"] = self.remaining_attempts
        return data


class RateLimitError(KYCError):
    code = "RATE_LIMIT"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TransientServiceError(KYCError):
    """A simulated collaborator said no. Always retryable."""
    code = "SERVICE_UNAVAILABLE"


class ConfigurationError(KYCError):
    """Programmer/integration error, e.g. submitting without a user id."""
    code = "CONFIGURATION_ERROR"


class UnexpectedError(KYCError):
    """An unanticipated exception inside a step action, recorded instead of crashing the wizard."""
    code = "INTERNAL_ERROR"


class InvalidTransitionError(KYCError):
    code = "INVALID_TRANSITION"


class RecordValidationError(KYCError):
    """A collaborator rejected its input. details lists every problem found."""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["details"] = self.details
        return data
