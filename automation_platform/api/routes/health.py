"""
Health API Routes
"""
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from automation_platform import __version__
from automation_platform.config import settings
from automation_platform.database import check_database_connection, database_health

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Application, database and scheduler health"""
    db = database_health()
    ok = bool(db.get("ok")) and check_database_connection()
    scheduler = getattr(request.app.state, "workflow_scheduler", None)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok else "degraded",
            "version": __version__,
            "environment": settings.app_env,
            "database": db,
            "scheduler": {
                "enabled": settings.scheduler_enabled,
                "running": bool(scheduler and scheduler.running),
            },
        },
    )


@router.get("/health/integrations")
async def check_integrations() -> dict:
    """Report which outbound integrations have credentials configured."""
    checks = {
        "sendgrid": settings.sendgrid_api_key is not None,
        "smtp": bool(settings.smtp_host),
        "slack": settings.slack_bot_token is not None,
        "database": check_database_connection(),
    }
    return {
        "integrations": checks,
        "email_ready": checks["sendgrid"] or checks["smtp"],
        "missing": [k for k, v in checks.items() if not v],
    }
