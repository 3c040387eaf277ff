"""
Atelier Studio Core - Main Application

FastAPI application exposing the photo-studio orchestration core:
- API versioning (/api/v1/)
- Garment ingestion slots (analyze, select, extract)
- Keyed try-on preview registry
- Size chart reading
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from atelier.core.config import settings
from atelier.core.exceptions import CircuitBreaker, register_exception_handlers
from atelier.core.logging import setup_logging, get_logger, clear_log_context
from atelier.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from atelier.api.v1 import api_v1_router
from atelier.inference import HttpInferenceClient, InferenceClient, SimulatedInferenceClient
from atelier.ingestion import IngestionService
from atelier.previews import PreviewRegistry


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


def build_inference_client() -> InferenceClient:
    """Simulated backend in development, HTTP backend otherwise."""
    if settings.USE_SIMULATION:
        return SimulatedInferenceClient()
    return HttpInferenceClient(
        base_url=settings.INFERENCE_API_URL,
        api_key=settings.INFERENCE_API_KEY,
        timeout=settings.INFERENCE_TIMEOUT_SECONDS,
        circuit=CircuitBreaker(
            name="inference",
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT_SECONDS
        )
    )


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        simulation=settings.USE_SIMULATION
    )

    client = build_inference_client()
    app.state.inference_client = client
    app.state.ingestion = IngestionService(client)
    app.state.previews = PreviewRegistry(client)

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    # In-flight results are dropped, but calls finish before the client closes
    app.state.previews.clear_all()
    await app.state.previews.join()
    await app.state.ingestion.join()
    await app.state.inference_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Photo-studio orchestration core:

    - **Ingestion**: person detection, garment region identification,
      operator selection and background removal per upload slot
    - **Previews**: concurrent try-on previews keyed by pose/item
    - **Size charts**: structured measurements from a chart photo
    - **Observability**: Structured logging, Prometheus metrics

    ## API Versioning

    All endpoints are versioned under `/api/v1/`

    ## Ingestion Stages

    Idle -> Analyzing -> (Selecting) -> Extracting -> Done | Failed
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    clear_log_context()
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health(request: Request):
    """Health check endpoint."""
    client = request.app.state.inference_client
    circuit = getattr(client, "circuit", None)
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "inference_backend": type(client).__name__,
        "circuit_state": circuit.state if circuit is not None else None
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "atelier.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
