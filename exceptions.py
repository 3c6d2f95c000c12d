"""
Custom Exceptions for the Alumni Records API
============================================

Raise these from the store and service layers; the API layer maps them to
HTTP responses through a single exception handler in ``main``.

Usage:
    from exceptions import ResourceNotFoundError, DuplicateRecordError

    if not doc:
        raise ResourceNotFoundError("Alumni", alumni_id)
"""

from typing import Optional, Any, Dict


class AlumniRecordsError(Exception):
    """Base exception for all alumni records errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Authentication & Authorization Errors
# ============================================

class AuthenticationError(AlumniRecordsError):
    """User authentication failed"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(AlumniRecordsError):
    """User not authorized for this action"""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="NOT_AUTHORIZED")


# ============================================
# Resource Errors (404-type)
# ============================================

class ResourceNotFoundError(AlumniRecordsError):
    """Base class for not found errors"""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found",
            code=f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": str(resource_id)}
        )


# ============================================
# Validation Errors (400-type)
# ============================================

class ValidationError(AlumniRecordsError):
    """Input validation failed"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class DuplicateRecordError(AlumniRecordsError):
    """A natural key (registration number, email, unit name) is already taken"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[str] = None):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = value
        super().__init__(message, code="DUPLICATE_KEY", details=details)


# ============================================
# Storage Errors
# ============================================

class StorageError(AlumniRecordsError):
    """Persistence layer unreachable or rejected the operation"""

    def __init__(self, message: str = "Storage operation failed", operation: Optional[str] = None):
        super().__init__(message, code="STORAGE_ERROR")
        if operation:
            self.details["operation"] = operation


class UploadError(StorageError):
    """File upload to object storage failed"""

    def __init__(self, field: str, message: str = "Upload failed"):
        super().__init__(f"Failed to upload '{field}': {message}")
        self.code = "UPLOAD_FAILED"
        self.details["field"] = field


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: AlumniRecordsError, expose_internal: bool = True) -> Dict[str, Any]:
    """Convert exception to API error response body"""
    if error.status_code >= 500 and not expose_internal:
        return {"detail": "Internal server error", "code": error.code}
    return {
        "detail": error.message,
        "code": error.code,
        "details": error.details
    }
