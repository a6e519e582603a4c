# microdonate/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from microdonate import __version__
from microdonate.api import admin, audit_logs, auth, causes, config, dashboard, donations, health, two_factor
from microdonate.core.config import settings
from microdonate.core.errors import AppError, app_error_handler
from microdonate.core.logging import configure_logging
from microdonate.deps import get_repo
from microdonate.middleware.idempotency import IdempotencyMiddleware
from microdonate.middleware.request_log import RequestLogMiddleware
from microdonate.services.expiry import CauseExpiryScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    repo = app.dependency_overrides.get(get_repo, get_repo)()

    if settings.use_mongo:
        from microdonate.core.db import get_client, get_db
        from microdonate.core.indexes import ensure_indexes
        await ensure_indexes(get_db())

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = CauseExpiryScheduler(repo)
        scheduler.start()
    app.state.expiry_scheduler = scheduler
    logger.info("microdonate %s started (store=%s)", __version__, "mongo" if settings.use_mongo else "memory")

    yield

    if scheduler is not None:
        scheduler.stop()
    if settings.use_mongo:
        get_client().close()


# --- Create app FIRST ---
app = FastAPI(lifespan=lifespan, title="Micro-Donation Platform API", version=__version__)

app.add_exception_handler(AppError, app_error_handler)

# innermost first: idempotency sees the final response, the request log wraps everything
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLogMiddleware)

# ---------------- Include routers ----------------
app.include_router(auth.router)         # /api/auth
app.include_router(causes.router)       # /api/causes
app.include_router(donations.router)    # /api/donate
app.include_router(admin.router)        # /api/admin
app.include_router(audit_logs.router)   # /api/admin/audit-logs
app.include_router(two_factor.router)   # /api/2fa
app.include_router(config.router)       # /api/config
app.include_router(dashboard.router)    # /api/dashboard
app.include_router(health.router)       # /health


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("microdonate.main:app", host="0.0.0.0", port=8000)
