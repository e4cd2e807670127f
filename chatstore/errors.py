"""Error taxonomy for chat store operations."""

from typing import Any, Dict, Optional

from fastapi import HTTPException


class ChatStoreError(HTTPException):
    """Base error raised by in-memory chat operations."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={"message": message, "error_code": error_code, "details": details},
        )


class NotFoundError(ChatStoreError):
    """A chat, branch or message id did not resolve."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=404, error_code="NOT_FOUND", details=details)


class InvalidOperationError(ChatStoreError):
    """The operation would break a structural rule (e.g. deleting main)."""

    def __init__(self, message: str = "Invalid operation", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="INVALID_OPERATION",
            details=details,
        )


class ValidationError(ChatStoreError):
    """Malformed input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details,
        )
