# =====================================================
# FILE: credvault/api/api_v1/monitoring/health.py
# Unauthenticated health report
# =====================================================

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import logging

from credvault.core.dependencies import get_supervisor_dep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


@router.get("/health")
async def health(supervisor=Depends(get_supervisor_dep)):
    """Per-subsystem status; 503 when anything is degraded"""
    report = await supervisor.health()
    report["version"] = supervisor.settings.APP_VERSION
    if report["status"] != "healthy":
        logger.warning(f"⚠️ Health check degraded: {report['services']}")
    return JSONResponse(
        status_code=200 if report["status"] == "healthy" else 503,
        content=report
    )
