import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.api.admin_routes import admin_router
from feedsync.api.export_routes import export_router
from feedsync.api.webhook_routes import webhook_router
from feedsync.database.db import get_db, init_db
from feedsync.config.settings import get_settings
from feedsync.services.errors import FeedSyncError

logger = logging.getLogger(__name__)

settings = get_settings()


def create_app() -> FastAPI:
    # Disable Swagger/ReDoc in production
    docs_kwargs = {}
    if settings.is_production:
        docs_kwargs = {"docs_url": None, "redoc_url": None}

    app = FastAPI(
        title="feedsync",
        description="Shopify catalog to mobile-app CSV feed sync",
        version="0.1.0",
        **docs_kwargs,
    )

    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(export_router)

    @app.exception_handler(FeedSyncError)
    async def feedsync_error_handler(request: Request, exc: FeedSyncError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.get("/health", tags=["health"])
    def health_check():
        return {"status": "ok", "version": "0.1.0"}

    @app.get("/health/db", tags=["health"])
    def health_db(db: Session = Depends(get_db)):
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.exception("Database health check failed")
            raise HTTPException(status_code=503, detail=f"Database unavailable: {type(exc).__name__}")
        return {"status": "ok", "database": "connected"}

    @app.on_event("startup")
    def on_startup():
        settings.validate_production()
        if not settings.is_deployed:
            init_db()  # Deployed envs run: alembic upgrade head

    return app


app = create_app()
