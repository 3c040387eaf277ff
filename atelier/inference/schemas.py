"""
Inference Boundary Schemas

Pydantic models for the values exchanged with the remote inference
backend: bounding boxes, identified garment regions, size-chart rows
and preview requests.
"""

from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, model_validator


class BoundingBox(BaseModel):
    """Box normalized to [0, 1], ordered (y_min, x_min, y_max, x_max)."""

    model_config = {"frozen": True}

    y_min: float = Field(..., ge=0.0, le=1.0)
    x_min: float = Field(..., ge=0.0, le=1.0)
    y_max: float = Field(..., ge=0.0, le=1.0)
    x_max: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_ordering(self) -> "BoundingBox":
        if self.y_min > self.y_max or self.x_min > self.x_max:
            raise ValueError("bounding box minimum must not exceed maximum")
        return self

    @classmethod
    def from_sequence(cls, box: Sequence[float]) -> "BoundingBox":
        if len(box) != 4:
            raise ValueError(f"bounding box needs 4 values, got {len(box)}")
        y_min, x_min, y_max, x_max = (float(v) for v in box)
        return cls(y_min=y_min, x_min=x_min, y_max=y_max, x_max=x_max)

    def as_list(self) -> List[float]:
        return [self.y_min, self.x_min, self.y_max, self.x_max]


class Region(BaseModel):
    """A candidate garment detected in a photograph."""

    model_config = {"frozen": True}

    label: str
    box: BoundingBox


class SizeMeasurement(BaseModel):
    """One row of a size chart: a size label and its measurements."""

    size_label: str
    unit: str = "in"
    measurements: Dict[str, float] = Field(default_factory=dict)


class MeasuredSize(SizeMeasurement):
    """A size-chart row with an id assigned on ingestion."""

    id: str


class PreviewPayload(BaseModel):
    """Request payload for generating one pose preview."""

    model_config = {"frozen": True, "protected_namespaces": ()}

    model_image_url: str
    garment_image_urls: List[str] = Field(default_factory=list)
    instruction: str
    background: Optional[str] = None
