"""
Media Jobs API - Main application entry point.

Asynchronous AI analysis and fix jobs for uploaded room photos and videos,
with content-addressed deduplication and metered credits.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.database import close_client, create_indexes, get_client, get_db
from app.core.middleware import MaxBodySizeMiddleware
from app.billing.views import router as billing_router
from app.jobs.views import router as jobs_router

settings = get_settings()
API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    create_indexes(get_db())
    yield
    # Shutdown
    close_client()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
## Media Jobs API

Submit uploaded media for AI analysis, request fixes for the problems found,
and poll job status.

### Features

- **Analysis jobs**: image and video analysis, deduplicated by content
- **Fix jobs**: targeted fixes for selected problems, deduplicated by request
- **Credits**: per-plan monthly credits, kept in sync with RevenueCat

    """,
    lifespan=lifespan,
    docs_url=f"{API_PREFIX}/docs",
    redoc_url=f"{API_PREFIX}/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(MaxBodySizeMiddleware)

# Include routers
routers = [
    jobs_router,
    billing_router,
]

for router in routers:
    app.include_router(router, prefix=API_PREFIX)


@app.get("/", tags=["Health"])
async def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": "connected" if get_client.cache_info().currsize else "disconnected",
        "version": settings.APP_VERSION,
    }
