"""
Garment Ingestion Pipeline

Turns one uploaded photograph into a clean garment image for one
upload slot. Strategy selection:

1. detect_person == False            -> whole-frame extraction (flat-lay)
2. person, identify_regions == []    -> whole-frame extraction
3. person, N >= 1 regions            -> Selecting; operator picks one,
                                        targeted extraction of its box
4. analysis raised                   -> non-fatal notice, whole-frame
                                        extraction; Failed if that fails

Every remote call goes through the bounded retry wrapper. State changes
happen synchronously between remote calls; a newer submission (or a
dismissal) bumps the slot's epoch, and results computed for an older
epoch are dropped instead of applied.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Union

from atelier.core.exceptions import (
    PipelineStageError,
    SelectionError,
    friendly_error_message,
)
from atelier.core.images import ImagePayload, load_upload
from atelier.core.logging import get_logger, set_log_context
from atelier.core.metrics import record_ingestion_outcome, record_transition
from atelier.core.retry import call_with_retry
from atelier.inference.client import InferenceClient
from atelier.inference.schemas import Region
from atelier.ingestion.states import (
    Analyzing,
    Done,
    Extracting,
    Failed,
    Idle,
    IngestionStage,
    IngestionState,
    Selecting,
    is_allowed,
)

logger = get_logger(__name__)


class GarmentView(str, Enum):
    """Photographed side of a garment variant."""
    FRONT = "front"
    BACK = "back"
    LEFT = "left"
    RIGHT = "right"


class IngestionPath(str, Enum):
    """Strategy path that led to extraction (used for logs and metrics)."""
    REGION = "region"
    FLAT_LAY = "flat_lay"
    NO_REGIONS = "person_no_regions"
    ANALYSIS_FALLBACK = "analysis_fallback"
    SECONDARY_VIEW = "secondary_view"


@dataclass
class GarmentVariant:
    """Destination catalog item that receives the extracted image."""

    id: str
    color_name: str = ""
    views: Dict[str, str] = field(default_factory=dict)


StateListener = Callable[[str, IngestionState], None]


class IngestionPipeline:
    """
    Stage machine for a single upload slot.

    `submit_photo` and `select_region` validate and transition
    synchronously, then return the asyncio task doing the remote work.
    """

    def __init__(
        self,
        slot_id: str,
        client: InferenceClient,
        variant: Optional[GarmentVariant] = None
    ):
        self.slot_id = slot_id
        self.client = client
        self.variant = variant or GarmentVariant(id=slot_id)

        self._state: IngestionState = Idle()
        self._epoch = 0
        self._view = GarmentView.FRONT
        self._task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> IngestionState:
        return self._state

    @property
    def stage(self) -> IngestionStage:
        return self._state.stage

    @property
    def view(self) -> GarmentView:
        return self._view

    def add_listener(self, listener: StateListener):
        """Call `listener(slot_id, state)` after every transition."""
        self._listeners.append(listener)

    # =========================================================================
    # Entry points
    # =========================================================================

    def submit_photo(
        self,
        data: Union[bytes, ImagePayload],
        content_type: Optional[str] = None,
        view: Union[GarmentView, str] = GarmentView.FRONT
    ) -> asyncio.Task:
        """
        Start a fresh ingestion run for this slot.

        Pre-empts any run in progress. Raises ValidationError (with no
        state change) when the upload is not an image.
        """
        view = GarmentView(view)
        if isinstance(data, ImagePayload):
            data, content_type = data.data, data.mime_type
        image = load_upload(data, content_type, label=f"{view.value} view")

        self._epoch += 1
        epoch = self._epoch
        self._view = view
        if self._state.stage is not IngestionStage.IDLE:
            self._transition(Idle())

        preview = image.to_data_url()
        if view is GarmentView.FRONT:
            self._transition(Analyzing(source=image, preview_data_url=preview))
            return self._spawn(self._analyze(epoch, image, preview))

        # Region selection only applies to the front view
        self._transition(Extracting(source=image, preview_data_url=preview))
        return self._spawn(
            self._extract(epoch, image, preview, None, IngestionPath.SECONDARY_VIEW)
        )

    def select_region(self, choice: Union[int, Region]) -> asyncio.Task:
        """Resolve the Selecting stage with one candidate (by index or value)."""
        state = self._state
        if not isinstance(state, Selecting):
            raise SelectionError(
                "No garment selection is pending for this upload.",
                slot_id=self.slot_id,
                stage=state.stage.value
            )

        candidates = state.candidate_regions
        if isinstance(choice, Region):
            if choice not in candidates:
                raise SelectionError(
                    "The selected garment is not one of the detected candidates.",
                    slot_id=self.slot_id,
                    stage=state.stage.value
                )
            region = choice
        else:
            if not 0 <= choice < len(candidates):
                raise SelectionError(
                    f"Candidate index {choice} is out of range (0-{len(candidates) - 1}).",
                    slot_id=self.slot_id,
                    stage=state.stage.value
                )
            region = candidates[choice]

        self._transition(Extracting(
            source=state.source,
            preview_data_url=state.preview_data_url,
            region=region
        ))
        return self._spawn(self._extract(
            self._epoch, state.source, state.preview_data_url, region, IngestionPath.REGION
        ))

    def dismiss(self):
        """Reset the slot to Idle; results of in-flight calls are discarded."""
        self._epoch += 1
        if self._state.stage is not IngestionStage.IDLE:
            self._transition(Idle())

    async def wait(self):
        """Wait for the most recently started run step to settle."""
        if self._task is not None:
            await self._task

    # =========================================================================
    # Run steps
    # =========================================================================

    async def _analyze(self, epoch: int, image: ImagePayload, preview: str):
        set_log_context(slot_id=self.slot_id, stage=IngestionStage.ANALYZING.value)
        try:
            is_person = await call_with_retry(
                lambda: self.client.detect_person(image), operation="detect_person"
            )
            regions: List[Region] = []
            if is_person:
                regions = await call_with_retry(
                    lambda: self.client.identify_regions(image), operation="identify_regions"
                )
        except Exception as e:
            if not self._is_current(epoch, "analyze"):
                return
            logger.warning(
                "analysis_failed_falling_back",
                error=str(e),
                error_type=type(e).__name__
            )
            self._transition(Extracting(
                source=image,
                preview_data_url=preview,
                notice=friendly_error_message(e, "Failed to analyze image. Trying standard segmentation")
            ))
            await self._extract(epoch, image, preview, None, IngestionPath.ANALYSIS_FALLBACK)
            return

        if not self._is_current(epoch, "analyze"):
            return

        if regions:
            logger.info("regions_identified", count=len(regions))
            self._transition(Selecting(
                source=image,
                preview_data_url=preview,
                candidate_regions=tuple(regions)
            ))
            return

        path = IngestionPath.NO_REGIONS if is_person else IngestionPath.FLAT_LAY
        logger.info("whole_frame_extraction_selected", path=path.value)
        self._transition(Extracting(source=image, preview_data_url=preview))
        await self._extract(epoch, image, preview, None, path)

    async def _extract(
        self,
        epoch: int,
        image: ImagePayload,
        preview: str,
        region: Optional[Region],
        path: IngestionPath
    ):
        set_log_context(slot_id=self.slot_id, stage=IngestionStage.EXTRACTING.value)
        try:
            if region is None:
                result = await call_with_retry(
                    lambda: self.client.extract_whole_frame(image),
                    operation="extract_whole_frame"
                )
            else:
                result = await call_with_retry(
                    lambda: self.client.extract_region(image, region.box),
                    operation="extract_region"
                )
        except Exception as e:
            if not self._is_current(epoch, "extract"):
                return
            context = (
                "Failed to extract garment. Please try again" if region is not None
                else "Failed to process image"
            )
            logger.error(
                "ingestion_failed",
                path=path.value,
                error=str(e),
                error_type=type(e).__name__
            )
            record_ingestion_outcome("failed", path.value)
            self._transition(Failed(
                preview_data_url=preview,
                error_message=friendly_error_message(e, context)
            ))
            return

        if not self._is_current(epoch, "extract"):
            return

        result_url = result.to_data_url()
        self.variant.views[self._view.value] = result_url
        if region is not None and region.label and not self.variant.color_name.strip():
            self.variant.color_name = region.label

        record_ingestion_outcome("done", path.value)
        self._transition(Done(
            preview_data_url=preview,
            result_image_url=result_url,
            region=region
        ))

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_current(self, epoch: int, step: str) -> bool:
        if epoch == self._epoch:
            return True
        logger.info(
            "stale_result_dropped",
            step=step,
            epoch=epoch,
            current_epoch=self._epoch
        )
        return False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"ingestion:{self.slot_id}")
        self._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _transition(self, new_state: IngestionState):
        current = self._state
        if not is_allowed(current.stage, new_state.stage):
            raise PipelineStageError(
                f"Illegal ingestion transition {current.stage.value} -> {new_state.stage.value}",
                stage=current.stage.value,
                slot_id=self.slot_id
            )

        self._state = new_state
        logger.info(
            "ingestion_stage_changed",
            slot_id=self.slot_id,
            from_stage=current.stage.value,
            to_stage=new_state.stage.value
        )
        record_transition(current.stage.value, new_state.stage.value)

        for listener in list(self._listeners):
            try:
                listener(self.slot_id, new_state)
            except Exception as e:
                logger.error("ingestion_listener_failed", error=str(e), error_type=type(e).__name__)
