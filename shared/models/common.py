"""
Common Models
=============

Response envelopes shared by the HTTP layer.

Version: 0.1.0
"""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class BaseResponse(BaseModel, Generic[T]):
    """Standard API response wrapper."""

    success: bool = True
    data: T | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ErrorResponse(BaseModel):
    """Error response model."""

    success: bool = False
    error: str
    code: str | None = None
    status_code: int
    details: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class HealthResponse(BaseModel):
    """Service health check response."""

    status: str = "healthy"
    service: str
    version: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Component health
    components: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_components(cls, service: str, version: str, components: dict[str, dict[str, Any]]) -> "HealthResponse":
        """Degraded unless every backend reports healthy."""
        healthy = all(c.get("status") == "healthy" for c in components.values())
        return cls(
            status="healthy" if healthy else "degraded",
            service=service,
            version=version,
            components=components,
        )
