"""
API exception classes.

Every failure the routine and access engines surface to a caller maps to one
of these; anything else is turned into a generic 500 by the handlers in main.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class APIException(HTTPException):
    """Base API exception with a stable error code."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class Unauthorized(APIException):
    """No (valid) identity on the request."""

    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"},
        )


class Forbidden(APIException):
    """Identity lacks the required access level or role."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail, error_code="FORBIDDEN")


class NotFound(APIException):
    """Referenced template, schedule, instance or horse does not exist."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        detail = f"{resource} not found" if identifier is None else f"{resource} not found: {identifier}"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail, error_code="NOT_FOUND")


class InvalidState(APIException):
    """Operation is not valid for the current status."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail, error_code="INVALID_STATE")


class ValidationFailed(APIException):
    """Malformed or inconsistent input."""

    def __init__(self, detail: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail, error_code="VALIDATION_FAILED")
        self.details = details or []


class Conflict(APIException):
    """Concurrent modification detected."""

    def __init__(self, detail: str = "Resource was modified concurrently, reload and retry"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail, error_code="CONFLICT")


class DocumentDecodeError(APIException):
    """A stored document does not match its expected shape."""

    def __init__(self, kind: str, identifier: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
            error_code="DOCUMENT_DECODE_ERROR",
        )
        self.kind = kind
        self.identifier = identifier
