"""
Simulated inference backend for development without the remote service.

Mirrors the real client's contract: each call sleeps for a configurable
latency and returns deterministic results.
"""

import io
import asyncio
from typing import List, Optional, Sequence

from PIL import Image

from atelier.core.config import settings
from atelier.core.images import ImagePayload
from atelier.core.logging import get_logger
from atelier.core.metrics import record_inference_call
from atelier.inference.client import InferenceClient
from atelier.inference.schemas import (
    BoundingBox,
    PreviewPayload,
    Region,
    SizeMeasurement,
)

logger = get_logger(__name__)


def _placeholder_png(size=(256, 384), color=(128, 128, 128)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class SimulatedInferenceClient(InferenceClient):
    """
    Deterministic stand-in for the inference service.

    Args:
        latency: seconds each call takes (defaults to SIMULATION_LATENCY_SECONDS)
        person_detected: answer returned by detect_person
        regions: regions returned by identify_regions
    """

    def __init__(
        self,
        latency: Optional[float] = None,
        person_detected: bool = False,
        regions: Optional[Sequence[Region]] = None,
    ):
        self.latency = settings.SIMULATION_LATENCY_SECONDS if latency is None else latency
        self.person_detected = person_detected
        self.regions = list(regions or [])

    async def _simulate(self, operation: str):
        logger.debug("inference_simulated", operation=operation, latency=self.latency)
        await asyncio.sleep(self.latency)
        record_inference_call(operation, "simulated", 200)

    async def detect_person(self, image: ImagePayload) -> bool:
        await self._simulate("detect_person")
        return self.person_detected

    async def identify_regions(self, image: ImagePayload) -> List[Region]:
        await self._simulate("identify_regions")
        return list(self.regions)

    async def extract_region(self, image: ImagePayload, box: BoundingBox) -> ImagePayload:
        await self._simulate("extract_region")
        with Image.open(io.BytesIO(image.data)) as img:
            width, height = img.size
            crop = img.convert("RGBA").crop((
                int(box.x_min * width),
                int(box.y_min * height),
                max(int(box.x_max * width), int(box.x_min * width) + 1),
                max(int(box.y_max * height), int(box.y_min * height) + 1),
            ))
        buffer = io.BytesIO()
        crop.save(buffer, format="PNG")
        return ImagePayload(data=buffer.getvalue(), mime_type="image/png")

    async def extract_whole_frame(self, image: ImagePayload) -> ImagePayload:
        await self._simulate("segment")
        # Pass-through, as with the other simulated stages
        return image

    async def analyze_size_chart(self, image: ImagePayload) -> List[SizeMeasurement]:
        await self._simulate("analyze_size_chart")
        return [
            SizeMeasurement(size_label="S", unit="in", measurements={"chest": 36.0, "length": 27.0}),
            SizeMeasurement(size_label="M", unit="in", measurements={"chest": 40.0, "length": 28.0}),
            SizeMeasurement(size_label="L", unit="in", measurements={"chest": 44.0, "length": 29.0}),
        ]

    async def generate_preview(self, payload: PreviewPayload) -> ImagePayload:
        await self._simulate("generate_preview")
        return ImagePayload(data=_placeholder_png(), mime_type="image/png")
