"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    DuplicateError,
    DatabaseError,

    # Linking
    ShipmentNotFoundError,
    MessageNotFoundError,
    LinkNotFoundError,
    LinkRaceError,
    InvalidThresholdsError,
)

__all__ = [
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "DuplicateError",
    "DatabaseError",
    "ShipmentNotFoundError",
    "MessageNotFoundError",
    "LinkNotFoundError",
    "LinkRaceError",
    "InvalidThresholdsError",
]
