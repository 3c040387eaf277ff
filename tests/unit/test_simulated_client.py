import io

import pytest
from PIL import Image

from atelier.core.images import ImagePayload
from atelier.inference import SimulatedInferenceClient
from atelier.inference.schemas import BoundingBox, PreviewPayload, Region
from atelier.ingestion import IngestionPipeline, IngestionStage


@pytest.mark.asyncio
async def test_extract_region_crops_the_box(png_bytes):
    client = SimulatedInferenceClient(latency=0)
    image = ImagePayload(data=png_bytes)

    result = await client.extract_region(image, BoundingBox.from_sequence([0.0, 0.0, 0.5, 0.5]))

    with Image.open(io.BytesIO(result.data)) as cropped:
        assert cropped.size == (16, 24)


@pytest.mark.asyncio
async def test_preview_returns_png():
    client = SimulatedInferenceClient(latency=0)

    result = await client.generate_preview(PreviewPayload(model_image_url="data:", instruction="pose"))

    assert result.mime_type == "image/png"
    assert result.data.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_drives_the_pipeline_to_selecting(png_bytes):
    shirt = Region(label="Shirt", box=BoundingBox.from_sequence([0.0, 0.0, 1.0, 1.0]))
    client = SimulatedInferenceClient(latency=0, person_detected=True, regions=[shirt])
    pipeline = IngestionPipeline("slot-1", client)

    await pipeline.submit_photo(png_bytes, "image/png")
    assert pipeline.stage is IngestionStage.SELECTING

    await pipeline.select_region(0)
    assert pipeline.stage is IngestionStage.DONE
