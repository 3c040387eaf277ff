"""
Size-chart reading.

Turns a photographed size chart into measured sizes for a garment.
"""

import uuid
from typing import List, Optional

from atelier.core.exceptions import InferenceError, friendly_error_message
from atelier.core.images import ImagePayload, load_upload
from atelier.core.logging import get_logger
from atelier.core.retry import with_retry
from atelier.inference.client import InferenceClient
from atelier.inference.schemas import MeasuredSize, SizeMeasurement

logger = get_logger(__name__)


@with_retry(operation="analyze_size_chart")
async def _analyze(client: InferenceClient, image: ImagePayload) -> List[SizeMeasurement]:
    return await client.analyze_size_chart(image)


async def read_size_chart(
    client: InferenceClient,
    data: bytes,
    content_type: Optional[str] = None
) -> List[MeasuredSize]:
    """
    Read a size chart upload.

    Rows without a size label or without any measurement are dropped;
    each kept row gets a unique id.

    Raises:
        ValidationError: the upload is not an image
        InferenceError: the chart could not be read
    """
    image = load_upload(data, content_type, label="size chart")

    try:
        rows = await _analyze(client, image)
    except Exception as e:
        logger.error("size_chart_failed", error=str(e), error_type=type(e).__name__)
        raise InferenceError(
            friendly_error_message(e, "Could not read the size chart"),
            operation="analyze_size_chart",
            http_status=getattr(e, "http_status", None),
        ) from e

    sizes = [
        MeasuredSize(id=f"m-{uuid.uuid4().hex[:12]}", **row.model_dump())
        for row in rows
        if row.size_label.strip() and row.measurements
    ]
    logger.info("size_chart_read", sizes=len(sizes), dropped=len(rows) - len(sizes))
    return sizes
