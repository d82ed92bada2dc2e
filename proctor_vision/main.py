"""
Proctor Vision Service - FastAPI Application
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import time

from . import __version__
from .config import settings
from .proctor.api import router as proctor_router
from .utils import get_logger, setup_logging

logger = get_logger(__name__)


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Facial signal fusion and anomaly detection for proctored assessments",
    version=__version__,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests with timing."""
    start = time.time()
    method = request.method
    path = request.url.path
    quiet = path in ["/health", "/favicon.ico"]
    
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"RequestError: {method} {path}: {e}")
        raise
    
    if not quiet:
        duration_ms = int((time.time() - start) * 1000)
        logger.info(f"{method} {path} -> {response.status_code} in {duration_ms}ms")
    
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using wildcard origin
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(proctor_router)


@app.on_event("startup")
async def startup_event():
    """Configure logging and report the active configuration."""
    setup_logging(
        service_name="proctor-vision",
        level=settings.LOG_LEVEL,
        log_to_file=settings.LOG_TO_FILE,
        log_dir=settings.LOG_DIR
    )
    logger.info(f"Screen: {settings.SCREEN_WIDTH}x{settings.SCREEN_HEIGHT}")
    logger.info(f"Review threshold: {settings.REVIEW_THRESHOLD}")
    logger.info(f"Debug Mode: {settings.DEBUG}")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": __version__
    }
