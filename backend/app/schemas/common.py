"""
Exposure Backend — Shared Response Schemas
============================================

What:  Error and health payloads used across every router.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "validation_error",
            "message": "File 2 (notes.pdf): File extension '.pdf' is not allowed...",
            "details": {"field": "files", "errors": ["File 2 (notes.pdf): ..."]},
            "request_id": "1b4e28ba"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    storage: str = Field(description="Storage root: writable, unavailable")
    thumbnail_jobs: int = Field(description="Thumbnail jobs currently queued")
    uptime_seconds: float = Field(description="Seconds since service started")
