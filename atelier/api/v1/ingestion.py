"""
Ingestion Endpoints - Garment photo upload per slot

POST   /api/v1/ingestion/{slot_id}/photo      - Submit a photograph
GET    /api/v1/ingestion/{slot_id}            - Current stage and destination variant
POST   /api/v1/ingestion/{slot_id}/selection  - Pick one candidate region
DELETE /api/v1/ingestion/{slot_id}            - Dismiss (reset to Idle)

Remote work runs in the background; clients poll the slot state.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field

from atelier.api.dependencies import get_ingestion_service
from atelier.core.logging import LogContext, get_logger
from atelier.ingestion.pipeline import GarmentView
from atelier.ingestion.service import IngestionService

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class RegionResponse(BaseModel):
    label: str
    box: List[float]


class VariantResponse(BaseModel):
    id: str
    color_name: str
    views: Dict[str, str]


class SlotStateResponse(BaseModel):
    """Snapshot of one upload slot."""
    slot_id: str
    stage: str
    view: str
    preview_data_url: Optional[str] = None
    candidate_regions: List[RegionResponse] = Field(default_factory=list)
    selected_region: Optional[RegionResponse] = None
    result_image_url: Optional[str] = None
    error_message: Optional[str] = None
    notice: Optional[str] = None
    variant: VariantResponse


class SelectionRequest(BaseModel):
    index: int = Field(..., ge=0, description="Index into candidate_regions")


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/{slot_id}/photo", response_model=SlotStateResponse, status_code=202)
async def submit_photo(
    slot_id: str,
    file: UploadFile = File(...),
    view: GarmentView = Form(GarmentView.FRONT),
    color_name: Optional[str] = Form(None),
    service: IngestionService = Depends(get_ingestion_service)
):
    """
    Submit a garment photograph for a slot.

    Pre-empts any ingestion already running for the slot. Non-image
    uploads are rejected with 400 and leave the slot untouched.
    """
    data = await file.read()
    with LogContext(slot_id=slot_id):
        logger.info(
            "photo_received",
            view=view.value,
            filename=file.filename,
            size_bytes=len(data)
        )
        service.submit_photo(slot_id, data, file.content_type, view, color_name=color_name)
    return service.describe(slot_id)


@router.get("/{slot_id}", response_model=SlotStateResponse)
async def get_slot(
    slot_id: str,
    service: IngestionService = Depends(get_ingestion_service)
):
    return service.describe(slot_id)


@router.post("/{slot_id}/selection", response_model=SlotStateResponse, status_code=202)
async def select_region(
    slot_id: str,
    selection: SelectionRequest,
    service: IngestionService = Depends(get_ingestion_service)
):
    """Resolve the Selecting stage with one of the candidate regions."""
    with LogContext(slot_id=slot_id):
        service.get(slot_id).select_region(selection.index)
    return service.describe(slot_id)


@router.delete("/{slot_id}", response_model=SlotStateResponse)
async def dismiss(
    slot_id: str,
    service: IngestionService = Depends(get_ingestion_service)
):
    service.get(slot_id).dismiss()
    return service.describe(slot_id)
