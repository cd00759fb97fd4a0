"""
API models and schemas for the FastAPI application.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error code or short description")
    message: Optional[str] = Field(None, description="Human readable detail")


class BroadcastResponse(BaseModel):
    """Result of a manual digest broadcast."""
    sent: bool = Field(..., description="Whether a note was delivered")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="API health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="API version")
    database_status: str = Field(..., description="Database connection status")
