"""
CredVault - FastAPI Main Application
Academic credential registry anchored on a ledger
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import uvicorn

from credvault.core.config import settings
from credvault.core.exceptions import Busy, CredVaultError, ValidationRejected
from credvault.core.log_filters import configure_logging
from credvault.services.supervisor import get_supervisor
from credvault.tasks.scheduler import start_scheduler, stop_scheduler

# Configure logging FIRST
configure_logging(settings.DEBUG)
logger = logging.getLogger(__name__)

# =====================================================
# IMPORT ALL ROUTERS
# =====================================================
from credvault.api.api_v1.auth.login import router as auth_router
logger.info("✅ Auth router imported")
from credvault.api.api_v1.documents.verify import router as verify_router
from credvault.api.api_v1.documents.documents import router as documents_router
logger.info("✅ Document routers imported")
from credvault.api.api_v1.roles.roles import router as roles_router
logger.info("✅ Roles router imported")
from credvault.api.api_v1.privacy.privacy import router as privacy_router
logger.info("✅ Privacy router imported")
from credvault.api.api_v1.monitoring.health import router as monitoring_router
logger.info("✅ Monitoring router imported")

# =====================================================
# LIFESPAN CONTEXT MANAGER
# =====================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")
    supervisor = get_supervisor()
    await supervisor.startup()

    scheduler = None
    if supervisor.settings.SCHEDULER_ENABLED:
        scheduler = start_scheduler(supervisor)
    else:
        logger.info("⚠️ Scheduler disabled by configuration")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    if scheduler is not None:
        stop_scheduler(scheduler)
    await supervisor.shutdown()
    supervisor.engine.dispose()
    logger.info("✅ Database connections closed")

# =====================================================
# INITIALIZE FASTAPI APP
# =====================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="Academic credential registry with ledger anchoring and encrypted storage",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# =====================================================
# MIDDLEWARE
# =====================================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================
@app.exception_handler(CredVaultError)
async def credvault_error_handler(request: Request, exc: CredVaultError):
    if exc.http_status >= 500:
        logger.error(f"❌ {request.method} {request.url.path} -> {exc.code}: {exc.detail}")
    else:
        logger.info(f"⚠️ {request.method} {request.url.path} -> {exc.code}: {exc.detail}")

    headers = {}
    if isinstance(exc, Busy):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict(include_detail=not settings.is_production)},
        headers=headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()]
    error = ValidationRejected(f"Invalid request: {exc.errors()[0]['msg']}", fields=fields)
    return JSONResponse(
        status_code=error.http_status,
        content={"success": False, "error": error.to_dict(include_detail=not settings.is_production)}
    )

# =====================================================
# INCLUDE ROUTERS
# =====================================================
app.include_router(auth_router)
# verify before documents so /verify is never read as a hash
app.include_router(verify_router)
app.include_router(documents_router)
app.include_router(roles_router)
app.include_router(privacy_router)
app.include_router(monitoring_router)
logger.info("✅ All routers registered")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/api/monitoring/health",
    }

# =====================================================
# MAIN ENTRY POINT
# =====================================================
if __name__ == "__main__":
    print("=" * 60)
    print(f"🚀 {settings.APP_NAME} Server Starting...")
    print("=" * 60)
    print(f"📝 API Documentation: http://localhost:{settings.PORT}/docs")
    print(f"🏥 Health Check: http://localhost:{settings.PORT}/api/monitoring/health")
    print("=" * 60)

    uvicorn.run(
        "credvault.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
