"""
Custom exception classes for the application.

Expected linking outcomes (orphan, low confidence, conflict) are results,
not exceptions. These classes cover persistence and programming errors.
"""

from typing import Optional, Any
from datetime import datetime, timezone


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "SHIPMENT_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper().replace(' ', '_')}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class DuplicateError(ConflictError):
    """Duplicate resource (409)."""

    def __init__(
        self,
        resource: str,
        field: str,
        value: str
    ):
        super().__init__(
            code=f"{resource.upper()}_{field.upper()}_EXISTS",
            message=f"{resource} with this {field} already exists",
            details={field: value}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# SPECIFIC ERRORS
# ===================

class ShipmentNotFoundError(NotFoundError):
    """Shipment not found."""

    def __init__(self, shipment_id: str):
        super().__init__(
            resource="Shipment",
            identifier=shipment_id,
            code="SHIPMENT_NOT_FOUND"
        )


class MessageNotFoundError(NotFoundError):
    """Email message not found."""

    def __init__(self, message_id: str):
        super().__init__(
            resource="Message",
            identifier=message_id,
            code="MESSAGE_NOT_FOUND"
        )


class LinkNotFoundError(NotFoundError):
    """Link or link suggestion not found."""

    def __init__(self, link_id: str, resource: str = "Link"):
        super().__init__(
            resource=resource,
            identifier=link_id,
            code=f"{resource.upper().replace(' ', '_')}_NOT_FOUND"
        )


class LinkRaceError(DuplicateError):
    """
    Insert lost a unique-constraint race.

    Raised by the link store between its insert and its retry-as-update;
    callers of upsert never see it.
    """

    def __init__(self, table: str, key: dict):
        super().__init__(
            resource=table,
            field="key",
            value=str(key)
        )


class InvalidThresholdsError(ValidationError):
    """Auto-link and suggestion thresholds are out of order."""

    def __init__(self, auto_link_threshold: int, suggestion_threshold: int):
        super().__init__(
            code="INVALID_LINKING_THRESHOLDS",
            message="Thresholds must satisfy 0 <= suggestion < auto_link <= 100",
            details={
                "auto_link_threshold": auto_link_threshold,
                "suggestion_threshold": suggestion_threshold,
            }
        )
