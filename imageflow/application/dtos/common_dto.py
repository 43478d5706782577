"""Common DTOs for API responses and error handling."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response model."""
    detail: str = Field(..., description="Error message describing what went wrong")


class SuccessResponse(BaseModel):
    """Standard success response model."""
    ok: bool = Field(True, description="Indicates the operation was successful")
    message: Optional[str] = Field(None, description="Optional success message")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Health status", examples=["healthy"])


class RootResponse(BaseModel):
    """Root endpoint response model."""
    status: str = Field(..., description="API status", examples=["ok"])
    service: str = Field(..., description="Service name", examples=["imageflow"])
    version: str = Field(..., description="API version", examples=["0.1.0"])
