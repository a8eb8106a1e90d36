"""Health check endpoints for monitoring API availability."""

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ad_refactor import __version__
from ad_refactor.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model.

    Attributes:
        status: Current health status (healthy/degraded)
        timestamp: Current server timestamp
        version: API version
        database: Database connection status
    """

    status: str
    timestamp: datetime
    version: str
    database: str = "not_connected"


@router.get("/health-check")
async def health_check_simple() -> dict[str, str]:
    """Liveness check used by deployment scripts."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Report system health including database connectivity."""
    connected = check_database_connection(request.app.state.engine)
    db_status = "connected" if connected else "disconnected"

    return HealthResponse(
        status="healthy" if connected else "degraded",
        timestamp=datetime.now(UTC),
        version=__version__,
        database=db_status,
    )
