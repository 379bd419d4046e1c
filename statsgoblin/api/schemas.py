from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class ServiceStatus(BaseModel):
    status: Literal["up", "down"]
    message: str | None = None
    details: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime
    services: dict[str, ServiceStatus]


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
