"""
Custom Exception Hierarchy

Raised by authoring-time services (rule and device-config writes) and by the
storage adapters. The message pipeline itself never lets these escape: it
logs them and degrades to "do nothing".
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Rule authoring errors (2xxx)
    RULE_NOT_FOUND = "ERR_2001"
    INVALID_MATCH_TYPE = "ERR_2002"
    INVALID_REGEX = "ERR_2003"

    # Device configuration errors (3xxx)
    CONFIG_NOT_FOUND = "ERR_3001"
    INVALID_BUSINESS_HOURS = "ERR_3002"
    INVALID_TIMEZONE = "ERR_3003"

    # Storage errors (5xxx)
    STATE_STORE_UNAVAILABLE = "ERR_5001"
    CIRCUIT_OPEN = "ERR_5002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when rule or configuration input fails validation"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message=message, error_code=error_code, details=details)
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested record is not found"""

    def __init__(
        self,
        resource: str,
        resource_id: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            error_code=error_code,
            details={"resource": resource, "id": str(resource_id)}
        )


class RuleNotFoundException(NotFoundException):
    def __init__(self, rule_id: int):
        super().__init__("AutoReplyRule", rule_id, error_code=ErrorCode.RULE_NOT_FOUND)


class StateStoreUnavailableError(AppException):
    """Shared key/value store timed out or refused the connection"""

    def __init__(self, operation: str, reason: str | None = None):
        super().__init__(
            message=f"State store unavailable during {operation}",
            error_code=ErrorCode.STATE_STORE_UNAVAILABLE,
            details={"operation": operation, "reason": reason}
        )
        self.operation = operation


class CircuitBreakerOpenError(AppException):
    """Raised when a call is refused because the breaker is open"""

    def __init__(self, service_name: str, retry_after: float):
        super().__init__(
            message=f"Circuit for {service_name} is open",
            error_code=ErrorCode.CIRCUIT_OPEN,
            details={"service": service_name, "retry_after_seconds": round(retry_after, 2)}
        )
        self.service_name = service_name
        self.retry_after = retry_after
