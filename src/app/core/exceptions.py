"""
Service Exceptions

Error taxonomy shared by the invite subsystem. Every failure surfaced to a
caller is one of these, carrying a stable machine-readable ``error_code``, a
human-readable message, and the HTTP status the router maps it to.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for service errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(ServiceError):
    """Raised for a malformed email address or a role that cannot be invited."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="VALIDATION_ERROR", status_code=400)


class DuplicateInviteError(ServiceError):
    """Raised when an active invite already exists for the email."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(
            message=f"An active invite already exists for {email}.",
            error_code="DUPLICATE_INVITE",
            status_code=409,
        )


class RateLimitExceededError(ServiceError):
    """Raised when any rate limit tier is exhausted."""

    def __init__(self, tier: str, limit: int, retry_after_seconds: int):
        self.tier = tier
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        minutes = max(1, retry_after_seconds // 60)
        super().__init__(
            message=f"Too many invite requests. Please try again in {minutes} minute(s).",
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class InvalidTokenError(ServiceError):
    """Raised when an invite token cannot be decoded or matches no invite."""

    def __init__(self, message: str = "Invalid invite token."):
        super().__init__(message=message, error_code="INVALID_TOKEN", status_code=400)


class ExpiredTokenError(ServiceError):
    """Raised when the invite behind a token has passed its expiry."""

    def __init__(self):
        super().__init__(
            message="This invite has expired. Please ask an administrator for a new one.",
            error_code="EXPIRED_TOKEN",
            status_code=410,
        )


class InvalidStatusTransitionError(ServiceError):
    """Raised when accept or cancel is attempted from a non-pending invite."""

    def __init__(self, current_status: str, new_status: str):
        self.current_status = current_status
        self.new_status = new_status
        super().__init__(
            message=f"Invite is already {current_status} and cannot become {new_status}.",
            error_code="INVALID_STATUS_TRANSITION",
            status_code=409,
        )


class NotFoundError(ServiceError):
    """Raised when a lookup by id, email, or token misses."""

    def __init__(self, message: str = "Invite not found."):
        super().__init__(message=message, error_code="NOT_FOUND", status_code=404)


class DependencyError(ServiceError):
    """Raised when the invite store or the counter store is unreachable."""

    def __init__(self, dependency: str):
        self.dependency = dependency
        super().__init__(
            message="Service temporarily unavailable. Please try again later.",
            error_code="DEPENDENCY_UNAVAILABLE",
            status_code=503,
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateInviteError",
    "RateLimitExceededError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "InvalidStatusTransitionError",
    "NotFoundError",
    "DependencyError",
]
