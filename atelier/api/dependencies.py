"""
FastAPI Dependencies

Services are created once in the application lifespan and stored on
app.state; these accessors hand them to the routers.
"""

from fastapi import Request

from atelier.inference.client import InferenceClient
from atelier.ingestion.service import IngestionService
from atelier.previews.registry import PreviewRegistry


def get_inference_client(request: Request) -> InferenceClient:
    return request.app.state.inference_client


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_preview_registry(request: Request) -> PreviewRegistry:
    return request.app.state.previews
