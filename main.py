"""
Main FastAPI application - Document Approval Workflow Service.
"""

import os
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docflow.api.v1 import router as api_v1_router
from docflow.config.settings import Settings, settings
from docflow.core.startup import create_lifespan

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger()

# ============================================================================
# FastAPI Application
# ============================================================================


def create_app(config: Settings = settings, role_resolver=None) -> FastAPI:
    """Build the application around a settings object"""
    app = FastAPI(
        title="Document Approval Workflow Service",
        description="Role-gated document approval routing with escalation and counter-approval",
        version="1.0.0",
        lifespan=create_lifespan(config, role_resolver),
    )

    # ========================================================================
    # Middleware Configuration
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Mount API Routes
    # ========================================================================

    app.include_router(api_v1_router)

    return app


app = create_app()

# ============================================================================
# Application Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(
        "starting_server",
        host=host,
        port=port,
        reload=reload
    )

    uvicorn.run(
        "main:app" if reload else app,
        host=host,
        port=port,
        reload=reload
    )
