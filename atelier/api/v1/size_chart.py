"""
Size Chart Endpoint

POST /api/v1/size-chart - Read a photographed size chart into measured sizes
"""

from typing import List

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel

from atelier.api.dependencies import get_inference_client
from atelier.inference.client import InferenceClient
from atelier.inference.schemas import MeasuredSize
from atelier.ingestion.size_chart import read_size_chart

router = APIRouter()


class SizeChartResponse(BaseModel):
    sizes: List[MeasuredSize]


@router.post("", response_model=SizeChartResponse)
async def analyze_size_chart(
    file: UploadFile = File(...),
    client: InferenceClient = Depends(get_inference_client)
):
    """Upload a size chart photo; returns one entry per size with an id."""
    data = await file.read()
    sizes = await read_size_chart(client, data, file.content_type)
    return SizeChartResponse(sizes=sizes)
