"""Health check endpoints for the control plane itself."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from datetime import datetime, timezone
import logging

from nodeops.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check():
    """Liveness probe - basic health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/ready")
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Readiness probe - checks database connectivity and the loaded registry."""
    monitor = getattr(request.app.state, "monitor", None)
    checks = {
        "database": False,
        "registry": getattr(request.app.state, "graph", None) is not None,
        "monitor": bool(monitor and monitor.running),
    }

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Readiness database check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "checks": checks, "error": str(e)},
        )

    if not checks["registry"]:
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})

    return {"status": "ready", "checks": checks}
