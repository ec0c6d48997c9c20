"""Liveness and readiness probes shared by both services."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.db import get_session

router = APIRouter(prefix="/health", tags=["system"])

_started = time.monotonic()


@router.get("", summary="Liveness probe")
def health() -> dict[str, object]:
    """Simple liveness probe that load balancers and monitors can call."""

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _started, 3),
    }


@router.get("/ready", summary="Readiness probe")
async def ready(session: AsyncSession = Depends(get_session)):
    start = time.perf_counter()
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=503, detail="Database not reachable")
    return {
        "status": "ok",
        "connected": True,
        "latency": round((time.perf_counter() - start) * 1000, 2),
    }
