"""
Preview Endpoints - Keyed preview task registry

GET    /api/v1/previews              - Snapshot {key: {status, image_url?, error?}}
POST   /api/v1/previews              - Bulk request (missing and errored keys only)
PUT    /api/v1/previews/{key}        - Request one key (no-op while loading)
POST   /api/v1/previews/{key}/retry  - Retry one key with its stored payload
DELETE /api/v1/previews/{key}        - Revert one key
DELETE /api/v1/previews              - Clear all
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from atelier.api.dependencies import get_preview_registry
from atelier.core.exceptions import NotFoundError
from atelier.inference.schemas import PreviewPayload
from atelier.previews.registry import PreviewRegistry

router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class PreviewSnapshotResponse(BaseModel):
    previews: Dict[str, Dict[str, Any]]


class BulkPreviewRequest(BaseModel):
    requests: Dict[str, PreviewPayload] = Field(..., description="Payload per preview key")


class PreviewActionResponse(BaseModel):
    key: Optional[str] = None
    launched: bool = False
    launched_keys: list = Field(default_factory=list)
    removed: int = 0
    previews: Dict[str, Dict[str, Any]]


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=PreviewSnapshotResponse)
async def get_previews(registry: PreviewRegistry = Depends(get_preview_registry)):
    return PreviewSnapshotResponse(previews=registry.snapshot())


@router.post("", response_model=PreviewActionResponse, status_code=202)
async def request_bulk(
    body: BulkPreviewRequest,
    registry: PreviewRegistry = Depends(get_preview_registry)
):
    before = registry.snapshot()
    registry.request_bulk(body.requests)
    launched = [
        key for key in body.requests
        if key not in before or before[key]["status"] == "error"
    ]
    return PreviewActionResponse(
        launched=bool(launched),
        launched_keys=launched,
        previews=registry.snapshot()
    )


@router.put("/{key}", response_model=PreviewActionResponse, status_code=202)
async def request_preview(
    key: str,
    payload: PreviewPayload,
    registry: PreviewRegistry = Depends(get_preview_registry)
):
    task = registry.request(key, payload)
    return PreviewActionResponse(key=key, launched=task is not None, previews=registry.snapshot())


@router.post("/{key}/retry", response_model=PreviewActionResponse, status_code=202)
async def retry_preview(
    key: str,
    registry: PreviewRegistry = Depends(get_preview_registry)
):
    task = registry.retry(key)
    return PreviewActionResponse(key=key, launched=task is not None, previews=registry.snapshot())


@router.delete("/{key}", response_model=PreviewActionResponse)
async def revert_preview(
    key: str,
    registry: PreviewRegistry = Depends(get_preview_registry)
):
    if not registry.revert(key):
        raise NotFoundError(f"Preview not found: {key}", details={"key": key})
    return PreviewActionResponse(key=key, removed=1, previews=registry.snapshot())


@router.delete("", response_model=PreviewActionResponse)
async def clear_previews(registry: PreviewRegistry = Depends(get_preview_registry)):
    removed = registry.clear_all()
    return PreviewActionResponse(removed=removed, previews=registry.snapshot())
