"""
FastAPI Application Entry Point

This module initializes the FastAPI application and configures:
- API routes (management, public endpoints, catch-all redirect)
- Middleware (logging, CORS)
- Startup / shutdown of the pipeline's shared resources

Design Decisions:
- Clean separation: Routes, middleware, and app config are separate
- Health endpoints and /api routes are registered before the catch-all
  /{short_code} route so they are matched first
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from zhort.api import endpoints, management
from zhort.core.logging_config import configure_logging
from zhort.core.pipeline_manager import initialize_pipeline, shutdown_pipeline
from zhort.core.rate_limit import limiter
from zhort.db.session import create_tables
from zhort.middleware.logging import add_logging_middleware

logger = configure_logging()

# Title and description are used in auto-generated API documentation
app = FastAPI(
    title="Zhort Link Service",
    description="Short link resolution pipeline: access control, scheduling, smart redirects, A/B tests, masking and analytics",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

add_logging_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health endpoints defined before router to match before catch-all route
@app.get("/", tags=["Health"])
async def root():
    """Root endpoint for health checks."""
    return {
        "message": "Zhort Link Service",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy"}


app.include_router(management.router, tags=["Management"])
app.include_router(endpoints.router, tags=["Links"])


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    await create_tables()
    await initialize_pipeline()
    logger.info("Zhort started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    await shutdown_pipeline()
    logger.info("Zhort stopped")
