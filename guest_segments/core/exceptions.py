"""
Custom exceptions for the guest segmentation engine.
Provides consistent error handling across the application.
"""
from typing import Optional, Any, Dict

from fastapi import HTTPException, status


class SegmentEngineException(Exception):
    """Base exception for the segmentation engine"""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "SegmentEngineError"

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.error}


class NotFoundError(SegmentEngineException):
    """Resource not found"""
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"

    def __init__(self, resource: str = "Resource", resource_id: str = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message)


class ScopeForbidden(SegmentEngineException):
    """Tenant cannot view, edit or create at the requested scope"""
    status_code = status.HTTP_403_FORBIDDEN
    error = "ScopeForbidden"

    def __init__(self, message: str = "You don't have permission to access this segment"):
        super().__init__(message)


class ValidationError(SegmentEngineException):
    """Validation failed"""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "ValidationError"

    def __init__(self, message: str = "Validation failed", field: str = None):
        self.field = field
        if field:
            message = f"Validation failed for field '{field}': {message}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class CriterionValidationError(ValidationError):
    """A criterion failed the vocabulary check"""

    UNKNOWN_TYPE = "UnknownType"
    ILLEGAL_OPERATOR = "IllegalOperator"
    MALFORMED_VALUE = "MalformedValue"

    def __init__(
        self,
        kind: str,
        message: str,
        field: str,
        index: Optional[int] = None
    ):
        self.kind = kind
        self.index = index
        self.reason = message
        location = f"criteria[{index}].{field}" if index is not None else field
        super().__init__(f"{kind}: {message}", location)

    def at(self, index: int) -> "CriterionValidationError":
        """Same error, located at a position in a segment's criteria list."""
        return CriterionValidationError(self.kind, self.reason, self.field.split(".")[-1], index)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind
        if self.index is not None:
            data["criterion_index"] = self.index
        return data


class ArchivedError(SegmentEngineException):
    """Illegal mutation on an archived segment"""
    status_code = status.HTTP_409_CONFLICT
    error = "Archived"

    def __init__(self, segment_id: str = None):
        message = "Archived segments cannot be modified"
        if segment_id:
            message = f"Segment '{segment_id}' is archived and cannot be modified"
        super().__init__(message)


class StaleVersion(SegmentEngineException):
    """Optimistic concurrency conflict on write"""
    status_code = status.HTTP_409_CONFLICT
    error = "StaleVersion"

    def __init__(self, segment_id: str = None, expected: int = None, actual: int = None):
        self.expected = expected
        self.actual = actual
        message = "Segment was modified concurrently, reload and retry"
        if expected is not None and actual is not None:
            message = f"Segment '{segment_id}' is at version {actual}, expected {expected}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.actual is not None:
            data["current_version"] = self.actual
        return data


class CorpusUnavailable(SegmentEngineException):
    """The bound guest store cannot be read (transient)"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "CorpusUnavailable"

    def __init__(self, message: str = None):
        msg = "Guest corpus unavailable"
        if message:
            msg = f"{msg}: {message}"
        super().__init__(msg)


class MatchTimeout(SegmentEngineException):
    """A match run exceeded its time budget"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "MatchTimeout"

    def __init__(self, budget_seconds: float = None):
        message = "Match run exceeded its time budget"
        if budget_seconds is not None:
            message = f"Match run exceeded its time budget of {budget_seconds}s"
        super().__init__(message)


# HTTP Exception helpers
def raise_unauthorized(message: str = "Could not validate credentials"):
    """Raise 401 HTTPException"""
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )
