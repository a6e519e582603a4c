import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from microdonate.core.security import utcnow
from microdonate.deps import get_repo

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

STARTED = time.monotonic()


@router.get("/health")
async def health(repo=Depends(get_repo)):
    start = time.perf_counter()
    try:
        await repo.ping()
        db = {"status": "connected", "response_time_ms": round((time.perf_counter() - start) * 1000, 2)}
        ok = True
    except Exception as exc:
        logger.error("Health check: store did not answer ping: %s", exc)
        db = {"status": "disconnected", "error": str(exc)}
        ok = False

    body = {
        "status": "UP" if ok else "DOWN",
        "timestamp": utcnow().isoformat(),
        "uptime": round(time.monotonic() - STARTED, 1),
        "database": db,
    }
    return JSONResponse(body, status_code=200 if ok else 503)
