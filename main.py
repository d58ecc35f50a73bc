import logging
import os

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from dotenv import load_dotenv

from core.config import settings
from core.logging import configure_logging
from core.db import init_db
from core.celery import celery_app
from core.exceptions import register_exception_handlers
from routes.auth import router as auth_router
from routes.subscriptions import router as subscriptions_router
from routes.admin import router as admin_router
from routes.webhooks import router as webhooks_router

load_dotenv()
logger = logging.getLogger(__name__)
configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"BearerAuth": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

# Ensure tables exist (for dev/test; in prod use Alembic)
init_db()

register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(subscriptions_router)
app.include_router(admin_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get("/celery-health")
async def celery_health_check():
    """Worker count plus the beat jobs this deployment schedules."""
    scheduled = sorted(celery_app.conf.beat_schedule or {})
    try:
        workers = celery_app.control.inspect(timeout=1.0).stats() or {}
    except Exception as exc:
        logger.warning("Celery inspect failed: %s", exc)
        return {"status": "unhealthy", "error": str(exc), "scheduled": scheduled}
    status = "healthy" if workers else "no_workers"
    return {"status": status, "workers": len(workers), "scheduled": scheduled}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
