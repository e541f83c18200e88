"""
Main FastAPI application - Agent Run Event Engine.
"""

import logging
import os
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agui_engine.api.v1 import router as api_v1_router
from agui_engine.config import settings
from agui_engine.core.startup import lifespan


def configure_logging(log_level: str = "INFO"):
    """Configure structured JSON logging filtered at log_level"""
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
    )


configure_logging(settings.log_level)

logger = structlog.get_logger()


# ============================================================================
# FastAPI Application
# ============================================================================


def create_app() -> FastAPI:
    """Build the application with middleware and routes"""
    app = FastAPI(
        title="Agent Run Event Engine",
        description="Streams validated agent run events with shared state synchronization",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include all v1 API routes
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
