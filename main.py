"""
Kodisha Payments FastAPI Application

Entry point for the M-Pesa payment subsystem of the Kodisha rental
marketplace.

create_app() builds every collaborator once (settings, M-Pesa gateway,
database session factory) and stores them on app.state; tests and workers
pass their own.

Run:
    uvicorn main:create_app --factory
    python main.py
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from config import Settings
from database.db import create_db_engine, create_session_factory
from payments.routers import admin, payments, payouts, webhooks
from payments.routers.deps import register_exception_handlers
from services.mpesa import MpesaConfig, MPesaService

SERVICE_NAME = "Kodisha Payments API"
VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[MPesaService] = None,
    session_factory: Optional[sessionmaker] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Anything not passed in is built from the environment; missing required
    configuration raises here, before the server accepts requests.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    if gateway is None:
        gateway = MPesaService(MpesaConfig.from_env())
    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(settings.database_url))

    app = FastAPI(
        title=SERVICE_NAME,
        description="M-Pesa payments and host payouts for the Kodisha rental marketplace",
        version=VERSION
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.session_factory = session_factory

    # CORS configuration (allow the web app to call the API)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(payments.router)
    app.include_router(webhooks.router)
    app.include_router(payouts.router)
    app.include_router(admin.router)

    # ============================================
    # Health Check Endpoint
    # ============================================

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for monitoring.

        Used by load balancers and deployment systems.
        """
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "environment": settings.app_env
        }

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "message": f"Welcome to {SERVICE_NAME}",
            "documentation": "/docs",
            "health": "/health"
        }

    logger.info(f"{SERVICE_NAME} ready (environment: {settings.app_env}, M-Pesa: {gateway.config.environment})")
    return app


# ============================================
# Run Server (Development Only)
# ============================================

if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info(f"Starting server on {settings.app_host}:{settings.app_port}")

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "development",  # Auto-reload on code changes (dev only!)
        log_level=settings.log_level.lower()
    )
