"""
CRM AI Segments API - Main Application

Hosts the AI segment engine for the contacts table:
- Conditional API docs (disabled in production)
- Correlation IDs on every log line and backend call
- RFC 7807 problem details for every error
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from crm_segments import __version__
from crm_segments.api.deps import close_registry
from crm_segments.api.v2.router import api_router
from crm_segments.config import settings
from crm_segments.exceptions import SegmentException, create_exception_handlers
from crm_segments.middleware import CorrelationIdMiddleware, CorrelationLogFilter

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
for handler in logging.getLogger().handlers:
    handler.addFilter(CorrelationLogFilter())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting CRM AI Segments API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"CRM backend: {settings.CRM_API_BASE_URL}")
    yield
    logger.info("Shutting down CRM AI Segments API...")
    await close_registry()


docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="CRM AI Segments API",
    description="AI-assisted audience segments for event CRM contacts",
    version=__version__,
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

allowed_origins = [settings.FRONTEND_URL]

# Local dev servers
allowed_origins.extend([
    "http://localhost:5173",
    "http://localhost:3000",
])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

handlers = create_exception_handlers(allowed_origins)
app.add_exception_handler(SegmentException, handlers["segment"])
app.add_exception_handler(StarletteHTTPException, handlers["http"])
app.add_exception_handler(RequestValidationError, handlers["validation"])
app.add_exception_handler(Exception, handlers["generic"])

app.include_router(api_router, prefix="/api/v2")


@app.get("/")
async def root():
    """Root endpoint - API info."""
    response = {
        "name": "CRM AI Segments API",
        "version": __version__,
        "health": "/health",
    }
    if settings.DOCS_ENABLED:
        response["docs"] = "/docs"
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_segments.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
