"""
Labels Router
Label batches from sales CSVs, per-order parcel planning, issuing and merging.
"""
from fastapi import APIRouter, UploadFile, File, Form
from pydantic import BaseModel
from typing import List, Optional
import logging
import uuid

from routers.imports import parse_mapping_field, read_csv_upload
from services.carrier_client import VippCredentials
from services.label_fulfillment import DEFAULT_SERVICE_CODE, MAX_PLANNED_PARCELS, SERVICE_CODES
from services.label_service import label_service, order_to_dict
import settings
from settings import vipp_credentials_configured

logger = logging.getLogger(__name__)
router = APIRouter()


class OrderPatchRequest(BaseModel):
    enviosTotal: Optional[int] = None
    serviceCode: Optional[str] = None


class OrderIdsRequest(BaseModel):
    orderIds: List[str]


class MergeRequest(BaseModel):
    orderIds: List[str]
    confirmMixedEmails: bool = False


@router.post("/labels/batches")
async def create_label_batch(
    file: UploadFile = File(...),
    mapping: Optional[str] = Form(None),
    templateId: Optional[str] = Form(None),
):
    request_id = str(uuid.uuid4())
    content = await read_csv_upload(file, request_id)
    batch = await label_service.create_batch(content, parse_mapping_field(mapping), templateId)
    logger.info(f"[{request_id}] Label batch {batch.batch_id} created with {len(batch.orders)} orders")
    return {
        "batchId": batch.batch_id,
        "totalRows": batch.total_rows,
        "orders": [order_to_dict(o) for o in batch.orders],
    }


@router.get("/labels/batches/{batch_id}/orders")
async def list_batch_orders(batch_id: str):
    orders = await label_service.list_orders(batch_id)
    return [order_to_dict(o) for o in orders]


@router.patch("/labels/orders/{order_id}")
async def update_order(order_id: str, request: OrderPatchRequest):
    order = None
    if request.serviceCode is not None:
        order = await label_service.set_service_code(order_id, request.serviceCode)
    if request.enviosTotal is not None:
        order = await label_service.set_planned_count(order_id, request.enviosTotal)
    if order is None:
        order = await label_service.get_order(order_id)
    return order_to_dict(order)


@router.post("/labels/orders/{order_id}/increment")
async def add_parcel(order_id: str):
    order = await label_service.increment_planned_count(order_id)
    return order_to_dict(order)


@router.post("/labels/generate")
async def generate_labels(request: OrderIdsRequest):
    if not request.orderIds:
        return {"results": [], "success": 0, "errors": 0}
    if not vipp_credentials_configured():
        logger.warning("Generating labels without VIPP credentials configured")
    outcomes = await label_service.generate(request.orderIds)
    orders = await label_service.store.get_label_orders([o.order_id for o in outcomes])
    return {
        "results": [o.to_dict() for o in outcomes],
        "orders": [order_to_dict(o) for o in orders],
        "success": sum(1 for o in outcomes if o.etiqueta),
        "errors": sum(1 for o in outcomes if o.error and o.status != "skipped"),
    }


@router.post("/labels/merge")
async def merge_orders(request: MergeRequest):
    merged = await label_service.merge(request.orderIds, confirm_mixed_emails=request.confirmMixedEmails)
    return order_to_dict(merged)


@router.post("/labels/orders/{order_id}/unmerge")
async def unmerge_order(order_id: str):
    restored = await label_service.unmerge(order_id)
    return [order_to_dict(o) for o in restored]


@router.get("/labels/service-codes")
async def list_service_codes():
    return {
        "default": DEFAULT_SERVICE_CODE,
        "maxParcels": MAX_PLANNED_PARCELS,
        "codes": [{"code": code, "name": name} for code, name in SERVICE_CODES.items()],
    }


@router.get("/labels/carrier/credentials")
async def show_carrier_credentials():
    config = {"url": settings.VIPP_API_URL, **VippCredentials.from_settings().masked()}
    return {
        "message": "Configuração ViPP atual",
        "configured": vipp_credentials_configured(),
        "config": config,
        "instrucoes": "Use POST /api/labels/carrier/credentials/test para testar com uma postagem de teste",
    }


@router.post("/labels/carrier/credentials/test")
async def run_carrier_credential_check():
    """Real posting with a fictitious recipient; consumes one label."""
    etiqueta = await label_service.check_carrier_credentials()
    logger.warning(f"VIPP credential check issued test label {etiqueta}")
    return {
        "success": True,
        "message": "CREDENCIAIS OK! Etiqueta de teste gerada.",
        "etiqueta": etiqueta,
        "aviso": "ATENÇÃO: Uma etiqueta real foi gerada neste teste!",
    }
