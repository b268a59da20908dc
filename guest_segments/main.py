"""
Guest Segmentation Engine - FastAPI Application
Main entry point with all routes configured.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from guest_segments.config import settings
from guest_segments.database import init_db, async_session
from guest_segments.core.exceptions import SegmentEngineException
from guest_segments.schemas.common import HealthResponse
from guest_segments.services.segment_service import SegmentService

# Import API routers
from guest_segments.api import segments

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await init_db()
    if settings.SEED_GLOBAL_TEMPLATES:
        async with async_session() as session:
            await SegmentService(session).seed_templates()
    logger.info("Guest Segmentation API started")
    yield
    # Shutdown


app = FastAPI(
    title="Guest Segmentation API",
    description="Rule-based guest segments for campground organizations",
    version="1.0.0",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SegmentEngineException)
async def segment_engine_exception_handler(request: Request, exc: SegmentEngineException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include all routers
app.include_router(segments.router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "message": "Guest Segmentation API is running",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health", response_model=HealthResponse)
async def health():
    """Detailed health check."""
    return HealthResponse()
