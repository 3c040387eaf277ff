import asyncio
import io

import pytest
from PIL import Image

from atelier.core.exceptions import SelectionError, ValidationError
from atelier.core.images import ImagePayload
from atelier.inference.schemas import BoundingBox, Region
from atelier.ingestion.pipeline import GarmentVariant, GarmentView, IngestionPipeline
from atelier.ingestion.states import (
    Done,
    Extracting,
    Failed,
    IngestionStage,
    Selecting,
    describe_state,
    is_allowed,
)


SHIRT = Region(label="Red Shirt", box=BoundingBox.from_sequence([0.1, 0.2, 0.5, 0.8]))
TROUSERS = Region(label="Blue Trousers", box=BoundingBox.from_sequence([0.5, 0.2, 0.95, 0.8]))


def green_png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (32, 48), (10, 200, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


def record_stages(pipeline):
    states = []
    pipeline.add_listener(lambda slot_id, state: states.append(state))
    return states


@pytest.mark.asyncio
async def test_flat_lay_goes_straight_to_whole_frame_extraction(inference_client, png_bytes, result_image):
    # Arrange
    pipeline = IngestionPipeline("slot-1", inference_client)
    states = record_stages(pipeline)

    # Act
    await pipeline.submit_photo(png_bytes, "image/png")

    # Assert
    assert [s.stage for s in states] == [
        IngestionStage.ANALYZING, IngestionStage.EXTRACTING, IngestionStage.DONE
    ]
    assert isinstance(pipeline.state, Done)
    assert pipeline.state.result_image_url == result_image.to_data_url()
    assert pipeline.variant.views == {"front": result_image.to_data_url()}
    inference_client.identify_regions.assert_not_awaited()
    inference_client.extract_whole_frame.assert_awaited_once()


@pytest.mark.asyncio
async def test_person_without_regions_uses_whole_frame(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = []
    pipeline = IngestionPipeline("slot-1", inference_client)

    await pipeline.submit_photo(png_bytes, "image/png")

    assert pipeline.stage is IngestionStage.DONE
    inference_client.identify_regions.assert_awaited_once()
    inference_client.extract_region.assert_not_awaited()


@pytest.mark.asyncio
async def test_regions_wait_for_operator_selection(inference_client, png_bytes, result_image):
    # Arrange
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = [SHIRT, TROUSERS]
    pipeline = IngestionPipeline("slot-1", inference_client)
    states = record_stages(pipeline)

    # Act
    await pipeline.submit_photo(png_bytes, "image/png")

    # Assert: parked in Selecting, nothing extracted yet
    assert isinstance(pipeline.state, Selecting)
    assert pipeline.state.candidate_regions == (SHIRT, TROUSERS)
    inference_client.extract_region.assert_not_awaited()
    inference_client.extract_whole_frame.assert_not_awaited()

    # Act: pick the trousers
    await pipeline.select_region(1)

    # Assert
    assert [s.stage for s in states] == [
        IngestionStage.ANALYZING,
        IngestionStage.SELECTING,
        IngestionStage.EXTRACTING,
        IngestionStage.DONE,
    ]
    assert states[2].region == TROUSERS
    assert pipeline.state.region == TROUSERS
    inference_client.extract_region.assert_awaited_once()
    assert inference_client.extract_region.await_args.args[1] == TROUSERS.box
    assert pipeline.variant.color_name == "Blue Trousers"


@pytest.mark.asyncio
async def test_selection_by_region_value(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = [SHIRT]
    pipeline = IngestionPipeline("slot-1", inference_client)
    await pipeline.submit_photo(png_bytes, "image/png")

    await pipeline.select_region(SHIRT)

    assert pipeline.stage is IngestionStage.DONE


@pytest.mark.asyncio
async def test_existing_color_name_is_kept(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = [SHIRT]
    pipeline = IngestionPipeline("slot-1", inference_client, GarmentVariant(id="v1", color_name="Crimson"))
    await pipeline.submit_photo(png_bytes, "image/png")

    await pipeline.select_region(0)

    assert pipeline.variant.color_name == "Crimson"


@pytest.mark.asyncio
async def test_analysis_failure_falls_back_with_notice(inference_client, png_bytes):
    # Arrange
    inference_client.detect_person.side_effect = RuntimeError("model overloaded")
    pipeline = IngestionPipeline("slot-1", inference_client)
    states = record_stages(pipeline)

    # Act
    await pipeline.submit_photo(png_bytes, "image/png")

    # Assert
    assert inference_client.detect_person.await_count == 2
    extracting = states[1]
    assert isinstance(extracting, Extracting)
    assert extracting.notice == "Failed to analyze image. Trying standard segmentation. model overloaded"
    assert pipeline.stage is IngestionStage.DONE
    inference_client.extract_whole_frame.assert_awaited_once()


@pytest.mark.asyncio
async def test_region_identification_failure_also_falls_back(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.side_effect = RuntimeError("bad json")
    pipeline = IngestionPipeline("slot-1", inference_client)

    await pipeline.submit_photo(png_bytes, "image/png")

    assert pipeline.stage is IngestionStage.DONE
    inference_client.extract_whole_frame.assert_awaited_once()


@pytest.mark.asyncio
async def test_fallback_extraction_failure_is_terminal(inference_client, png_bytes):
    inference_client.detect_person.side_effect = RuntimeError("analysis down")
    inference_client.extract_whole_frame.side_effect = RuntimeError("segmentation down")
    pipeline = IngestionPipeline("slot-1", inference_client)

    await pipeline.submit_photo(png_bytes, "image/png")

    assert isinstance(pipeline.state, Failed)
    assert pipeline.state.error_message == "Failed to process image. segmentation down"
    assert pipeline.state.preview_data_url.startswith("data:image/png;base64,")
    assert pipeline.variant.views == {}


@pytest.mark.asyncio
async def test_new_photo_after_failure_starts_fresh_cycle(inference_client, png_bytes, result_image):
    # Arrange: drive the slot to Failed
    inference_client.extract_whole_frame.side_effect = RuntimeError("segmentation down")
    pipeline = IngestionPipeline("slot-1", inference_client)
    await pipeline.submit_photo(png_bytes, "image/png")
    assert isinstance(pipeline.state, Failed)

    gate = asyncio.Event()

    async def detect_person(image):
        await gate.wait()
        return False

    inference_client.detect_person.side_effect = detect_person
    inference_client.extract_whole_frame.side_effect = None
    new_photo = green_png()

    # Act
    task = pipeline.submit_photo(new_photo, "image/png")

    # Assert: a clean Analyzing state carrying only the new photo
    snapshot = describe_state(pipeline.state)
    assert pipeline.stage is IngestionStage.ANALYZING
    assert snapshot["error_message"] is None
    assert snapshot["result_image_url"] is None
    assert snapshot["candidate_regions"] == []
    assert snapshot["notice"] is None
    assert snapshot["preview_data_url"] == ImagePayload(data=new_photo).to_data_url()

    gate.set()
    await task
    assert pipeline.stage is IngestionStage.DONE
    assert pipeline.state.result_image_url == result_image.to_data_url()


@pytest.mark.asyncio
async def test_region_extraction_failure_after_retry(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = [SHIRT]
    inference_client.extract_region.side_effect = RuntimeError("no output")
    pipeline = IngestionPipeline("slot-1", inference_client)
    await pipeline.submit_photo(png_bytes, "image/png")

    await pipeline.select_region(0)

    assert inference_client.extract_region.await_count == 2
    assert isinstance(pipeline.state, Failed)
    assert pipeline.state.error_message == "Failed to extract garment. Please try again. no output"


@pytest.mark.asyncio
async def test_transient_extraction_failure_is_retried(inference_client, png_bytes, result_image):
    inference_client.extract_whole_frame.side_effect = [RuntimeError("flaky"), result_image]
    pipeline = IngestionPipeline("slot-1", inference_client)

    await pipeline.submit_photo(png_bytes, "image/png")

    assert pipeline.stage is IngestionStage.DONE
    assert inference_client.extract_whole_frame.await_count == 2


@pytest.mark.asyncio
async def test_invalid_upload_changes_nothing(inference_client, png_bytes):
    pipeline = IngestionPipeline("slot-1", inference_client)
    await pipeline.submit_photo(png_bytes, "image/png")
    done = pipeline.state

    with pytest.raises(ValidationError):
        pipeline.submit_photo(b"%PDF-1.4", "application/pdf")

    assert pipeline.state is done
    assert inference_client.detect_person.await_count == 1


@pytest.mark.asyncio
async def test_selection_outside_selecting_is_rejected(inference_client):
    pipeline = IngestionPipeline("slot-1", inference_client)

    with pytest.raises(SelectionError):
        pipeline.select_region(0)

    assert pipeline.stage is IngestionStage.IDLE


@pytest.mark.asyncio
async def test_unknown_selection_keeps_selecting(inference_client, png_bytes):
    inference_client.detect_person.return_value = True
    inference_client.identify_regions.return_value = [SHIRT]
    pipeline = IngestionPipeline("slot-1", inference_client)
    await pipeline.submit_photo(png_bytes, "image/png")

    with pytest.raises(SelectionError):
        pipeline.select_region(3)
    with pytest.raises(SelectionError):
        pipeline.select_region(TROUSERS)

    assert pipeline.stage is IngestionStage.SELECTING


@pytest.mark.asyncio
async def test_new_photo_preempts_run_in_flight(inference_client, png_bytes, result_image):
    # Arrange: the first analysis blocks until released
    gate = asyncio.Event()
    calls = []

    async def detect_person(image):
        calls.append(image)
        if len(calls) == 1:
            await gate.wait()
            return True
        return False

    inference_client.detect_person.side_effect = detect_person
    inference_client.identify_regions.return_value = [SHIRT]
    pipeline = IngestionPipeline("slot-1", inference_client)
    states = record_stages(pipeline)

    # Act
    first = pipeline.submit_photo(png_bytes, "image/png")
    for _ in range(3):
        await asyncio.sleep(0)
    assert len(calls) == 1
    second = pipeline.submit_photo(png_bytes, "image/png")
    await second
    gate.set()
    await first

    # Assert: the stale analysis never surfaced its regions
    assert pipeline.stage is IngestionStage.DONE
    assert pipeline.state.region is None
    assert IngestionStage.SELECTING not in [s.stage for s in states]
    assert [s.stage for s in states][:3] == [
        IngestionStage.ANALYZING, IngestionStage.IDLE, IngestionStage.ANALYZING
    ]


@pytest.mark.asyncio
async def test_dismiss_discards_late_extraction(inference_client, png_bytes, result_image):
    gate = asyncio.Event()

    async def extract_whole_frame(image):
        await gate.wait()
        return result_image

    inference_client.extract_whole_frame.side_effect = extract_whole_frame
    pipeline = IngestionPipeline("slot-1", inference_client)

    task = pipeline.submit_photo(png_bytes, "image/png")
    for _ in range(5):
        await asyncio.sleep(0)
    assert pipeline.stage is IngestionStage.EXTRACTING

    pipeline.dismiss()
    gate.set()
    await task

    assert pipeline.stage is IngestionStage.IDLE
    assert pipeline.variant.views == {}


@pytest.mark.asyncio
async def test_secondary_view_skips_analysis(inference_client, png_bytes, result_image):
    pipeline = IngestionPipeline("slot-1", inference_client)
    states = record_stages(pipeline)

    await pipeline.submit_photo(png_bytes, "image/png", view=GarmentView.BACK)

    assert [s.stage for s in states] == [IngestionStage.EXTRACTING, IngestionStage.DONE]
    assert pipeline.variant.views == {"back": result_image.to_data_url()}
    inference_client.detect_person.assert_not_awaited()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_run(inference_client, png_bytes):
    pipeline = IngestionPipeline("slot-1", inference_client)

    def broken(slot_id, state):
        raise RuntimeError("listener bug")

    pipeline.add_listener(broken)

    await pipeline.submit_photo(png_bytes, "image/png")

    assert pipeline.stage is IngestionStage.DONE


def test_transition_table():
    assert is_allowed(IngestionStage.IDLE, IngestionStage.ANALYZING)
    assert is_allowed(IngestionStage.SELECTING, IngestionStage.EXTRACTING)
    assert is_allowed(IngestionStage.DONE, IngestionStage.IDLE)
    assert not is_allowed(IngestionStage.SELECTING, IngestionStage.DONE)
    assert not is_allowed(IngestionStage.DONE, IngestionStage.EXTRACTING)
    assert not is_allowed(IngestionStage.IDLE, IngestionStage.SELECTING)


def test_stage_data_shape_is_enforced(result_image):
    with pytest.raises(ValueError):
        Selecting(source=result_image, preview_data_url="data:", candidate_regions=())
    with pytest.raises(ValueError):
        Failed(preview_data_url=None, error_message="")


def test_describe_state_only_shows_current_stage_fields():
    done = describe_state(Done(preview_data_url="data:a", result_image_url="data:b", region=SHIRT))

    assert done["stage"] == "Done"
    assert done["result_image_url"] == "data:b"
    assert done["selected_region"] == {"label": "Red Shirt", "box": [0.1, 0.2, 0.5, 0.8]}
    assert done["candidate_regions"] == []
    assert done["error_message"] is None
    assert done["notice"] is None
