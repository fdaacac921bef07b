"""
Custom Exception Hierarchy

Structured exceptions shared by the alert pipeline, the workers and the API.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Alert errors (2xxx)
    ALERT_NOT_FOUND = "ERR_2001"
    ALERT_INVALID_TRANSITION = "ERR_2002"
    ALERT_STORE_WRITE_FAILED = "ERR_2003"

    # Evaluator errors (3xxx)
    EVALUATOR_FAILED = "ERR_3001"

    # External service errors (5xxx)
    WEBHOOK_DELIVERY_FAILED = "ERR_5001"
    WEBHOOK_SECONDARY_FAILED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class AlertNotFoundError(NotFoundException):
    """Raised when an alert id does not exist"""

    def __init__(self, alert_id: str):
        super().__init__("Alert", alert_id, error_code=ErrorCode.ALERT_NOT_FOUND)
        self.alert_id = alert_id


class InvalidStateTransitionError(AppException):
    """Raised when an alert status move is not allowed"""

    def __init__(self, alert_id: str, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.ALERT_INVALID_TRANSITION,
            status_code=400,
            details={
                "alert_id": alert_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class StoreWriteError(AppException):
    """
    Raised when an alert status write fails.

    The recorded status may now disagree with what was actually delivered,
    so this is logged at error level and surfaced distinctly.
    """

    def __init__(self, alert_id: str, target_status: str, reason: str):
        super().__init__(
            message=f"Failed to record status '{target_status}' for alert {alert_id}: {reason}",
            error_code=ErrorCode.ALERT_STORE_WRITE_FAILED,
            status_code=500,
            details={"alert_id": alert_id, "target_status": target_status}
        )


class EvaluatorError(AppException):
    """Raised (and recovered by the batch runner) when one evaluator fails"""

    def __init__(self, evaluator_name: str, reason: str):
        super().__init__(
            message=f"Evaluator '{evaluator_name}' failed: {reason}",
            error_code=ErrorCode.EVALUATOR_FAILED,
            status_code=500,
            details={"evaluator": evaluator_name}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WebhookDeliveryError(ExternalServiceException):
    """Raised when a webhook POST fails or returns a non-success status"""

    def __init__(
        self,
        endpoint: str,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.WEBHOOK_DELIVERY_FAILED,
    ):
        super().__init__(
            service_name=endpoint,
            message=f"Webhook '{endpoint}' delivery failed: {message}",
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        endpoint: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "WebhookDeliveryError":
        """
        Build the error from an HTTP response (e.g. httpx.Response).

        Args:
            endpoint: logical webhook name (alerts, stage_change, phase_activation)
            response: response object
            message: custom message (default: built from the status code)
            max_response_chars: cap on the stored response body
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            endpoint,
            message or f"returned status {status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class SecondaryDeliveryError(WebhookDeliveryError):
    """Best-effort phase activation failed; logged, never changes alert status"""

    def __init__(self, endpoint: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            endpoint,
            message,
            details=details,
            error_code=ErrorCode.WEBHOOK_SECONDARY_FAILED,
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
