"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/ingestion/*  - Garment ingestion per upload slot
- /api/v1/size-chart   - Size-chart reading
- /api/v1/previews/*   - Preview task registry
- /api/v1/metrics      - Prometheus metrics
"""

from fastapi import APIRouter

from atelier.api.v1.ingestion import router as ingestion_router
from atelier.api.v1.size_chart import router as size_chart_router
from atelier.api.v1.previews import router as previews_router
from atelier.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(ingestion_router, prefix="/ingestion", tags=["ingestion"])
api_v1_router.include_router(size_chart_router, prefix="/size-chart", tags=["size chart"])
api_v1_router.include_router(previews_router, prefix="/previews", tags=["previews"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
