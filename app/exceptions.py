"""
Error taxonomy for the booking core.

Every error carries a kind tag (``code``) that the HTTP layer maps to a
status code. Services raise these; routers never build HTTPException for
them directly.
"""

from typing import Any, Dict, Optional

from fastapi import status


class BookingCoreError(Exception):
    """Base exception for all core errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class Conflict(BookingCoreError):
    """Optimistic version mismatch. Re-read and decide."""

    status_code = status.HTTP_409_CONFLICT
    retryable = True


class InvalidTransition(BookingCoreError):
    """The resource is not in a state that allows the requested change."""

    status_code = status.HTTP_409_CONFLICT


class LockContention(BookingCoreError):
    """Another admin holds the action lock."""

    status_code = status.HTTP_409_CONFLICT
    retryable = True


class TokenExpired(BookingCoreError):
    """The magic-link window (including grace) has lapsed."""

    status_code = status.HTTP_410_GONE


class InvalidToken(BookingCoreError):
    """The presented token is not the booking's current token."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(BookingCoreError):
    status_code = status.HTTP_404_NOT_FOUND


class ValidationFailed(BookingCoreError):
    status_code = status.HTTP_400_BAD_REQUEST


class StorageFault(BookingCoreError):
    """Unexpected I/O error from the database or the blob store."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
