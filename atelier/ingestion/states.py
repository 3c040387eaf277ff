"""
Ingestion stage states.

Each stage is its own frozen dataclass carrying only the fields valid
for that stage, so data from an earlier stage cannot survive a
transition. `IngestionState` is the union of all of them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Tuple, Union

from atelier.core.images import ImagePayload
from atelier.inference.schemas import Region


class IngestionStage(str, Enum):
    """Pipeline stages."""
    IDLE = "Idle"
    ANALYZING = "Analyzing"
    SELECTING = "Selecting"
    EXTRACTING = "Extracting"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class Idle:
    stage: ClassVar[IngestionStage] = IngestionStage.IDLE


@dataclass(frozen=True)
class Analyzing:
    stage: ClassVar[IngestionStage] = IngestionStage.ANALYZING

    source: ImagePayload
    preview_data_url: str


@dataclass(frozen=True)
class Selecting:
    stage: ClassVar[IngestionStage] = IngestionStage.SELECTING

    source: ImagePayload
    preview_data_url: str
    candidate_regions: Tuple[Region, ...]

    def __post_init__(self):
        if not self.candidate_regions:
            raise ValueError("Selecting requires at least one candidate region")


@dataclass(frozen=True)
class Extracting:
    """
    Extraction in flight.

    `region` is None for whole-frame extraction. `notice` carries the
    non-fatal message shown when analysis failed and the pipeline fell
    back to whole-frame extraction.
    """
    stage: ClassVar[IngestionStage] = IngestionStage.EXTRACTING

    source: ImagePayload
    preview_data_url: str
    region: Optional[Region] = None
    notice: Optional[str] = None


@dataclass(frozen=True)
class Done:
    stage: ClassVar[IngestionStage] = IngestionStage.DONE

    preview_data_url: str
    result_image_url: str
    region: Optional[Region] = None


@dataclass(frozen=True)
class Failed:
    stage: ClassVar[IngestionStage] = IngestionStage.FAILED

    preview_data_url: Optional[str]
    error_message: str

    def __post_init__(self):
        if not self.error_message:
            raise ValueError("Failed requires a non-empty error message")


IngestionState = Union[Idle, Analyzing, Selecting, Extracting, Done, Failed]


# Every state may return to Idle (dismissal, or reset before a new photo)
ALLOWED_TRANSITIONS: Dict[IngestionStage, FrozenSet[IngestionStage]] = {
    IngestionStage.IDLE: frozenset({IngestionStage.ANALYZING, IngestionStage.EXTRACTING}),
    IngestionStage.ANALYZING: frozenset({IngestionStage.SELECTING, IngestionStage.EXTRACTING}),
    IngestionStage.SELECTING: frozenset({IngestionStage.EXTRACTING}),
    IngestionStage.EXTRACTING: frozenset({IngestionStage.DONE, IngestionStage.FAILED}),
    IngestionStage.DONE: frozenset(),
    IngestionStage.FAILED: frozenset(),
}


def is_allowed(current: IngestionStage, target: IngestionStage) -> bool:
    return target is IngestionStage.IDLE or target in ALLOWED_TRANSITIONS[current]


def describe_state(state: IngestionState) -> Dict[str, Any]:
    """
    Flatten a state into the snapshot shown to the UI.

    Fields that do not belong to the current stage are always empty.
    """
    region = getattr(state, "region", None)
    return {
        "stage": state.stage.value,
        "preview_data_url": getattr(state, "preview_data_url", None),
        "candidate_regions": [
            {"label": r.label, "box": r.box.as_list()}
            for r in getattr(state, "candidate_regions", ())
        ],
        "selected_region": (
            {"label": region.label, "box": region.box.as_list()} if region else None
        ),
        "result_image_url": getattr(state, "result_image_url", None),
        "error_message": getattr(state, "error_message", None),
        "notice": getattr(state, "notice", None),
    }
