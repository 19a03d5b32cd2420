"""
Export Router
Tracking-code CSV for the checkout platform and printable carrier labels.
"""
from fastapi import APIRouter, Response
from pydantic import BaseModel
from typing import List
from datetime import datetime
import logging

from services.label_service import label_service

logger = logging.getLogger(__name__)
router = APIRouter()


class ExportRequest(BaseModel):
    orderIds: List[str]


class PrintRequest(BaseModel):
    orderIds: List[str]
    format: str = "pdf"


@router.post("/export/labels/tracking-csv")
async def export_tracking_csv(request: ExportRequest):
    """Tracking codes, one row per original purchase"""
    content = await label_service.export_tracking(request.orderIds)
    filename = f"rastreios_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/export/labels/print")
async def print_labels(request: PrintRequest):
    result = await label_service.print_labels(request.orderIds, request.format)
    if result.content is not None:
        return Response(
            content=result.content,
            media_type=result.content_type,
            headers={"Content-Disposition": "inline; filename=etiquetas.pdf"},
        )
    logger.info("Carrier returned a download page for %d labels", len(result.codes))
    return {"downloadUrl": result.download_url, "codes": result.codes}
