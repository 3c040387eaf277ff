"""Garment ingestion: photo upload -> clean garment image."""

from atelier.ingestion.pipeline import GarmentVariant, GarmentView, IngestionPipeline
from atelier.ingestion.service import IngestionService
from atelier.ingestion.states import IngestionStage

__all__ = [
    "GarmentVariant",
    "GarmentView",
    "IngestionPipeline",
    "IngestionService",
    "IngestionStage",
]
