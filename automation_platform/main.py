"""
Automation Platform - FastAPI Application
Workflow execution engine, execution logs, cron schedules and webhook triggers
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from automation_platform import __version__
from automation_platform.api import websocket
from automation_platform.api.routes import auth, health
from automation_platform.api.v1 import executions, schedules, webhooks, workflows
from automation_platform.config import settings
from automation_platform.database import init_db
from automation_platform.services.workflow_scheduler import WorkflowScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting %s...", settings.app_name)

    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")

    logger.info(f"API running on {settings.app_env} environment")
    scheduler = WorkflowScheduler(poll_seconds=settings.scheduler_poll_seconds)
    app.state.workflow_scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Workflow scheduler disabled")
    yield
    if scheduler.running:
        await scheduler.stop()
    logger.info("Shutting down %s...", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Workflow automation backend",
    version=__version__,
    lifespan=lifespan,
)

# Respect forwarded proto/host so redirects don't downgrade to http.
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root() -> dict:
    return {
        "name": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "timestamp": datetime.utcnow().isoformat(),
    }


prefix = settings.api_v1_prefix
app.include_router(health.router, prefix=prefix, tags=["Health"])
app.include_router(auth.router, prefix=f"{prefix}/auth", tags=["Auth"])
app.include_router(workflows.router, prefix=f"{prefix}/workflows", tags=["Workflows"])
app.include_router(executions.router, prefix=f"{prefix}/executions", tags=["Executions"])
app.include_router(schedules.router, prefix=f"{prefix}/schedules", tags=["Schedules"])
app.include_router(webhooks.router, prefix=f"{prefix}/webhooks", tags=["Webhooks"])
app.include_router(websocket.router, tags=["WebSocket"])
