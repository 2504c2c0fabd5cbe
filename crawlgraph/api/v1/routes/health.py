"""Health check endpoints for load balancer and monitoring."""

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from crawlgraph.core.config import get_settings
from crawlgraph.core.database import session_scope
from crawlgraph.core.redis import RedisClient

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    checks: dict[str, str]


@router.get("", response_model=HealthResponse, include_in_schema=False)
async def health_check(redis: RedisClient) -> HealthResponse:
    checks: dict[str, str] = {}

    try:
        async with session_scope() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"

    try:
        await redis.ping()
        checks["broker"] = "healthy"
    except Exception as e:
        checks["broker"] = f"unhealthy: {e}"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "degraded"

    return HealthResponse(
        status=overall,
        version=get_settings().APP_VERSION,
        checks=checks,
    )


@router.get("/live", include_in_schema=False)
async def liveness() -> dict:
    """Kubernetes liveness probe."""
    return {"alive": True}
