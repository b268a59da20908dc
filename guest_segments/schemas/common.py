"""
Common schemas used across multiple endpoints.
"""
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error response."""
    detail: str
    error: str
    
    class Config:
        json_schema_extra = {"example": {"detail": "Segment not found", "error": "NotFound"}}


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str = "1.0.0"
