import pytest

from atelier.core.exceptions import InferenceError, ValidationError
from atelier.inference.schemas import SizeMeasurement
from atelier.ingestion.size_chart import read_size_chart


@pytest.mark.asyncio
async def test_rows_without_label_or_measurements_are_dropped(inference_client, png_bytes):
    # Arrange
    inference_client.analyze_size_chart.return_value = [
        SizeMeasurement(size_label="S", unit="in", measurements={"chest": 36.0}),
        SizeMeasurement(size_label="  ", unit="in", measurements={"chest": 38.0}),
        SizeMeasurement(size_label="M", unit="in", measurements={}),
        SizeMeasurement(size_label="L", unit="cm", measurements={"chest": 112.0, "waist": 96.0}),
    ]

    # Act
    sizes = await read_size_chart(inference_client, png_bytes, "image/png")

    # Assert
    assert [s.size_label for s in sizes] == ["S", "L"]
    assert sizes[1].unit == "cm"
    assert sizes[1].measurements == {"chest": 112.0, "waist": 96.0}
    assert all(s.id.startswith("m-") for s in sizes)
    assert len({s.id for s in sizes}) == 2


@pytest.mark.asyncio
async def test_failure_is_retried_and_reported(inference_client, png_bytes):
    inference_client.analyze_size_chart.side_effect = RuntimeError("unreadable")

    with pytest.raises(InferenceError) as exc_info:
        await read_size_chart(inference_client, png_bytes, "image/png")

    assert exc_info.value.message == "Could not read the size chart. unreadable"
    assert inference_client.analyze_size_chart.await_count == 2


@pytest.mark.asyncio
async def test_non_image_upload_never_reaches_backend(inference_client):
    with pytest.raises(ValidationError):
        await read_size_chart(inference_client, b"size,chest\nM,40", "text/csv")

    inference_client.analyze_size_chart.assert_not_awaited()
