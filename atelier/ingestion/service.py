"""
Upload slot registry.

One IngestionPipeline (and one destination GarmentVariant) per upload
slot; slots are independent of each other.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional, Union

from atelier.core.exceptions import NotFoundError
from atelier.core.images import load_upload
from atelier.core.logging import get_logger
from atelier.inference.client import InferenceClient
from atelier.ingestion.pipeline import GarmentVariant, GarmentView, IngestionPipeline
from atelier.ingestion.states import describe_state

logger = get_logger(__name__)


class IngestionService:
    """Owns the live ingestion pipelines, keyed by slot id."""

    def __init__(self, client: InferenceClient):
        self.client = client
        self._slots: Dict[str, IngestionPipeline] = {}

    def pipeline(self, slot_id: str, color_name: Optional[str] = None) -> IngestionPipeline:
        """Return the slot's pipeline, creating it on first use."""
        pipeline = self._slots.get(slot_id)
        if pipeline is None:
            pipeline = IngestionPipeline(
                slot_id,
                self.client,
                GarmentVariant(id=slot_id, color_name=color_name or "")
            )
            self._slots[slot_id] = pipeline
            logger.info("ingestion_slot_created", slot_id=slot_id)
        elif color_name:
            pipeline.variant.color_name = color_name
        return pipeline

    def submit_photo(
        self,
        slot_id: str,
        data: bytes,
        content_type: Optional[str] = None,
        view: Union[GarmentView, str] = GarmentView.FRONT,
        color_name: Optional[str] = None
    ) -> asyncio.Task:
        """
        Validate an upload, then start ingestion for the slot.

        A rejected upload raises ValidationError before the slot is
        created or its variant touched.
        """
        view = GarmentView(view)
        image = load_upload(data, content_type, label=f"{view.value} view")
        return self.pipeline(slot_id, color_name=color_name).submit_photo(image, view=view)

    def get(self, slot_id: str) -> IngestionPipeline:
        pipeline = self._slots.get(slot_id)
        if pipeline is None:
            raise NotFoundError(f"Upload slot not found: {slot_id}", slot_id=slot_id)
        return pipeline

    def describe(self, slot_id: str) -> Dict[str, Any]:
        pipeline = self.get(slot_id)
        return {
            "slot_id": slot_id,
            "view": pipeline.view.value,
            **describe_state(pipeline.state),
            "variant": asdict(pipeline.variant),
        }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {slot_id: self.describe(slot_id) for slot_id in self._slots}

    async def join(self):
        """Wait for every slot's current run step."""
        await asyncio.gather(*(p.wait() for p in list(self._slots.values())))
