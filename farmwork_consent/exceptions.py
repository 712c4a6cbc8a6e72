"""
Custom Exceptions for the FarmWork Hub consent service

Provides a unified exception hierarchy for consent recording, persistence,
the file audit mirror, retention configuration and request authorization.
"""

from typing import Optional, Dict, Any, Iterable

from .constants import ConsentValues, ErrorCodes


class ConsentServiceError(Exception):
    """
    Base exception for all consent service errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status the controller maps this error to
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.UNKNOWN_ERROR,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the JSON error envelope"""
        return {
            "success": False,
            "error": self.message,
            "code": self.error_code,
        }


# =============================================================================
# CONSENT ERRORS
# =============================================================================

class InvalidConsentValueError(ConsentServiceError):
    """Raised when a consent value is not one of the allowed decisions"""

    def __init__(
        self,
        value: Any,
        allowed: Iterable[str] = ConsentValues.ALL
    ):
        allowed = list(allowed)
        super().__init__(
            message='Invalid consent value. Must be "accepted" or "declined"',
            error_code=ErrorCodes.INVALID_CONSENT_VALUE,
            status_code=400,
            details={"value": str(value), "allowed": allowed}
        )


class ConsentRequiredError(ConsentServiceError):
    """Raised when a request carries no consent value at all"""

    def __init__(self):
        super().__init__(
            message="Consent value is required",
            error_code=ErrorCodes.CONSENT_REQUIRED,
            status_code=400
        )


# =============================================================================
# AUTHORIZATION ERRORS
# =============================================================================

class UnauthorizedError(ConsentServiceError):
    """Raised when admin or user credentials are missing or invalid"""

    def __init__(
        self,
        message: str = "Authentication required",
        error_code: str = ErrorCodes.AUTH_REQUIRED
    ):
        super().__init__(message, error_code, status_code=401)


class ConsentTokenRequiredError(ConsentServiceError):
    """Raised when a consent-gated request carries no consent token"""

    def __init__(self):
        super().__init__(
            message="Consent required to access this resource",
            error_code=ErrorCodes.CONSENT_REQUIRED,
            status_code=403
        )


class InvalidConsentTokenError(ConsentServiceError):
    """Raised when a consent token is unknown, declined or expired"""

    def __init__(self):
        super().__init__(
            message="Invalid or expired consent token",
            error_code=ErrorCodes.INVALID_CONSENT,
            status_code=403
        )


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================

class PersistenceFailureError(ConsentServiceError):
    """Raised when the relational store cannot complete an operation"""

    def __init__(
        self,
        operation: str,
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {"operation": operation}
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Database operation failed: {operation}",
            error_code=ErrorCodes.PERSISTENCE_FAILURE,
            status_code=500,
            details=details
        )


class AuditMirrorFailureError(ConsentServiceError):
    """Raised when a line cannot be appended to a file audit log"""

    def __init__(
        self,
        path: str,
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {"path": path}
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Failed to write audit log: {path}",
            error_code=ErrorCodes.AUDIT_MIRROR_FAILURE,
            status_code=500,
            details=details
        )


class ConfigurationInvalidError(ConsentServiceError):
    """Raised when retention or batching settings are out of bounds"""

    def __init__(self, errors: Iterable[str]):
        errors = list(errors)
        super().__init__(
            message="Invalid retention configuration: " + "; ".join(errors),
            error_code=ErrorCodes.CONFIGURATION_INVALID,
            status_code=500,
            details={"errors": errors}
        )
