import io
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from atelier.core.images import ImagePayload
from atelier.inference.client import InferenceClient
from atelier.ingestion import IngestionService
from atelier.main import app
from atelier.previews import PreviewRegistry


def make_png(size=(32, 48), color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def result_image() -> ImagePayload:
    return ImagePayload(data=make_png(color=(255, 255, 255)), mime_type="image/png")


@pytest.fixture
def inference_client(result_image) -> AsyncMock:
    """Backend mock that answers like a flat-lay photo by default."""
    client = AsyncMock(spec=InferenceClient)
    client.detect_person.return_value = False
    client.identify_regions.return_value = []
    client.extract_whole_frame.return_value = result_image
    client.extract_region.return_value = result_image
    client.analyze_size_chart.return_value = []
    client.generate_preview.return_value = result_image
    return client


@pytest.fixture
async def client(inference_client) -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown), then swap in the mocked backend
    async with app.router.lifespan_context(app):
        original = app.state.inference_client
        app.state.inference_client = inference_client
        app.state.ingestion = IngestionService(inference_client)
        app.state.previews = PreviewRegistry(inference_client)
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
        finally:
            await app.state.ingestion.join()
            await app.state.previews.join()
            app.state.inference_client = original
