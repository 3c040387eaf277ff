"""
Remote Inference Client

Thin async abstraction over the external image-inference service.
Every operation is fallible and has no side effects beyond its return
value or error. Retries are applied by callers (see atelier.core.retry);
this layer only maps transport and protocol failures to InferenceError
and feeds the circuit breaker.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from atelier.core.config import settings
from atelier.core.exceptions import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    InferenceError,
)
from atelier.core.images import ImagePayload
from atelier.core.logging import get_logger
from atelier.core.metrics import record_inference_call, track_inference_latency
from atelier.inference.schemas import (
    BoundingBox,
    PreviewPayload,
    Region,
    SizeMeasurement,
)

logger = get_logger(__name__)


class InferenceClient(ABC):
    """Interface for the remote inference backend."""

    @abstractmethod
    async def detect_person(self, image: ImagePayload) -> bool:
        """Whether the photo contains a person, a mannequin or body parts."""

    @abstractmethod
    async def identify_regions(self, image: ImagePayload) -> List[Region]:
        """Distinct garments worn in the photo; possibly empty."""

    @abstractmethod
    async def extract_region(self, image: ImagePayload, box: BoundingBox) -> ImagePayload:
        """Isolate and reconstruct the garment inside `box`."""

    @abstractmethod
    async def extract_whole_frame(self, image: ImagePayload) -> ImagePayload:
        """Segment the primary garment of a flat-lay photograph."""

    @abstractmethod
    async def analyze_size_chart(self, image: ImagePayload) -> List[SizeMeasurement]:
        """Read a photographed size chart into structured rows."""

    @abstractmethod
    async def generate_preview(self, payload: PreviewPayload) -> ImagePayload:
        """Render a quick preview of the model in the requested pose."""

    async def aclose(self):
        """Release any underlying connections."""


def _encode_image(image: ImagePayload) -> Dict[str, str]:
    return {"mime_type": image.mime_type, "data": image.to_base64()}


def parse_regions(items: Any) -> List[Region]:
    """
    Build regions from the backend's `items` list.

    Items whose box is not four in-range numbers are dropped rather than
    failing the whole response.
    """
    regions: List[Region] = []
    if not isinstance(items, list):
        return regions
    for item in items:
        if not isinstance(item, dict):
            continue
        box = item.get("box")
        if not isinstance(box, (list, tuple)) or len(box) != 4:
            continue
        try:
            regions.append(Region(label=str(item.get("label", "")).strip(), box=BoundingBox.from_sequence(box)))
        except (TypeError, ValueError):
            logger.warning("region_dropped", item=item)
    return regions


def parse_size_chart(rows: Any) -> List[SizeMeasurement]:
    """Build size rows from `[{sizeLabel, unit, measurements: [{dimension, value}]}]`."""
    sizes: List[SizeMeasurement] = []
    if not isinstance(rows, list):
        return sizes
    for row in rows:
        if not isinstance(row, dict):
            continue
        measurements: Dict[str, float] = {}
        for m in row.get("measurements") or []:
            try:
                measurements[str(m["dimension"])] = float(m["value"])
            except (KeyError, TypeError, ValueError):
                continue
        sizes.append(SizeMeasurement(
            size_label=str(row.get("sizeLabel", "")).strip(),
            unit=str(row.get("unit") or "in"),
            measurements=measurements,
        ))
    return sizes


class HttpInferenceClient(InferenceClient):
    """
    JSON-over-HTTP client for the inference service.

    Each operation is a POST to `{base_url}/{operation}` with images
    encoded as `{"mime_type": ..., "data": <base64>}`.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        api_key = api_key if api_key is not None else settings.INFERENCE_API_KEY
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.circuit = circuit or CircuitBreaker(
            "inference",
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
        )
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.INFERENCE_API_URL).rstrip("/"),
            headers=headers,
            timeout=timeout or settings.INFERENCE_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _post(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.circuit.can_execute():
            record_inference_call(operation, "circuit_open")
            raise CircuitBreakerOpenError("inference", details={"operation": operation})

        with track_inference_latency(operation):
            try:
                response = await self._client.post(f"/{operation}", json=payload)
            except httpx.TimeoutException as e:
                self.circuit.record_failure(e)
                logger.warning("inference_call_failed", operation=operation, error_type="timeout")
                record_inference_call(operation, "timeout")
                raise InferenceError(
                    f"Inference request timed out: {operation}",
                    operation=operation
                ) from e
            except httpx.HTTPError as e:
                self.circuit.record_failure(e)
                logger.warning("inference_call_failed", operation=operation, error=str(e), error_type=type(e).__name__)
                record_inference_call(operation, "error")
                raise InferenceError(
                    f"Network request failed: {e}",
                    operation=operation
                ) from e

            record_inference_call(
                operation,
                "success" if response.status_code == 200 else "error",
                response.status_code
            )

            if response.status_code >= 500:
                self.circuit.record_failure()
                logger.warning("inference_call_failed", operation=operation, http_status=response.status_code)
                raise InferenceError(
                    f"Inference service error ({response.status_code}): {response.text[:200]}",
                    operation=operation,
                    http_status=response.status_code
                )

            # Client-side errors say nothing about backend health
            self.circuit.record_success()

            if response.status_code != 200:
                raise InferenceError(
                    f"Inference request rejected ({response.status_code}): {response.text[:200]}",
                    operation=operation,
                    http_status=response.status_code
                )

            try:
                body = response.json()
            except ValueError as e:
                raise InferenceError(
                    f"Inference service returned invalid JSON for {operation}",
                    operation=operation,
                    http_status=response.status_code
                ) from e

        if not isinstance(body, dict):
            raise InferenceError(
                f"Inference service returned an unexpected structure for {operation}",
                operation=operation
            )

        block_reason = body.get("block_reason")
        if block_reason:
            message = body.get("block_message") or ""
            raise InferenceError(
                f"Request was blocked. Reason: {block_reason}. {message}".strip(),
                operation=operation
            )

        return body

    async def _post_for_image(self, operation: str, payload: Dict[str, Any]) -> ImagePayload:
        body = await self._post(operation, payload)
        image = body.get("image")
        if not isinstance(image, dict) or not image.get("data"):
            text = (body.get("text") or "").strip()
            detail = (
                f'The model responded with text: "{text}"' if text
                else "This can happen due to safety filters or if the request is too complex."
            )
            raise InferenceError(
                f"The AI model did not return an image. {detail}",
                operation=operation
            )
        try:
            return ImagePayload.from_base64(image["data"], mime_type=image.get("mime_type") or "image/png")
        except Exception as e:
            raise InferenceError(f"Undecodable image from {operation}: {e}", operation=operation) from e

    async def detect_person(self, image: ImagePayload) -> bool:
        body = await self._post("detect_person", {"image": _encode_image(image)})
        return bool(body.get("person"))

    async def identify_regions(self, image: ImagePayload) -> List[Region]:
        body = await self._post("identify_regions", {"image": _encode_image(image)})
        return parse_regions(body.get("items"))

    async def extract_region(self, image: ImagePayload, box: BoundingBox) -> ImagePayload:
        return await self._post_for_image(
            "extract_region",
            {"image": _encode_image(image), "box": box.as_list()}
        )

    async def extract_whole_frame(self, image: ImagePayload) -> ImagePayload:
        return await self._post_for_image("segment", {"image": _encode_image(image)})

    async def analyze_size_chart(self, image: ImagePayload) -> List[SizeMeasurement]:
        body = await self._post("analyze_size_chart", {"image": _encode_image(image)})
        sizes = body.get("sizes")
        if not isinstance(sizes, list):
            raise InferenceError(
                "AI returned a JSON object with an unexpected structure.",
                operation="analyze_size_chart"
            )
        return parse_size_chart(sizes)

    async def generate_preview(self, payload: PreviewPayload) -> ImagePayload:
        return await self._post_for_image("generate_preview", payload.model_dump())
