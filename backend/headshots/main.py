"""
Headshot Processing Core
Backend API - FastAPI Application
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from headshots.api import queue
from headshots.core.config import Settings, settings
from headshots.services.scheduler import QueueScheduler, create_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None, scheduler: Optional[QueueScheduler] = None) -> FastAPI:
    """Build the application; a scheduler can be injected for tests"""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.scheduler is None:
            app.state.scheduler = create_scheduler(config)
        app.state.scheduler.start()
        logger.info("Processing queue started")
        yield
        await app.state.scheduler.shutdown()
        logger.info("Processing queue shut down")

    app = FastAPI(
        title="Headshot Processing API",
        description="Queue-driven headshot cropping and enhancement",
        version="1.0.0",
        debug=config.DEBUG,
        lifespan=lifespan
    )
    app.state.scheduler = scheduler

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(queue.router, prefix=config.API_V1_PREFIX, tags=["queue"])

    @app.get("/")
    async def root():
        """Health check endpoint"""
        return {"status": "ok", "service": "Headshot Processing API"}

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {"status": "healthy"}

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An internal error occurred",
                "field": None
            }
        )

    return app


app = create_app()
