"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from atelier.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - atelier_inference_latency_seconds (per operation)
    - atelier_retry_attempts_total
    - atelier_ingestion_outcomes_total
    - atelier_preview_results_total
    - atelier_http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
