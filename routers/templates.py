"""
Templates Router
Saved column mappings for CRM imports (integrations) and label batches.
"""
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, Optional
import logging

from services.column_mapper import unknown_keys
from services.errors import TemplateNotFoundError
from services.storage import storage, integration_template_to_dict, label_template_to_dict

logger = logging.getLogger(__name__)
router = APIRouter()


class IntegrationTemplateRequest(BaseModel):
    name: str
    mapping: Dict[str, str]
    stageId: str


class IntegrationTemplatePatch(BaseModel):
    name: Optional[str] = None
    mapping: Optional[Dict[str, str]] = None
    stageId: Optional[str] = None


class LabelTemplateRequest(BaseModel):
    name: str
    mapping: Dict[str, str]
    logoUrl: Optional[str] = None


class LabelTemplatePatch(BaseModel):
    name: Optional[str] = None
    mapping: Optional[Dict[str, str]] = None
    logoUrl: Optional[str] = None


def _check_mapping(mapping: Optional[Dict[str, str]]) -> None:
    if mapping is None:
        return
    unknown = unknown_keys(mapping)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Campos de mapeamento desconhecidos: {', '.join(unknown)}")


def _check_name(name: Optional[str]) -> None:
    if name is not None and not name.strip():
        raise HTTPException(status_code=400, detail="Nome do template é obrigatório")


# ---------- Integrations ----------

@router.get("/templates/integrations")
async def list_integration_templates():
    templates = await storage.list_integration_templates()
    return [integration_template_to_dict(t) for t in templates]


@router.get("/templates/integrations/{template_id}")
async def get_integration_template(template_id: str):
    template = await storage.get_integration_template(template_id)
    if template is None:
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return integration_template_to_dict(template)


@router.post("/templates/integrations", status_code=201)
async def create_integration_template(request: IntegrationTemplateRequest):
    _check_name(request.name)
    _check_mapping(request.mapping)
    if not request.stageId.strip():
        raise HTTPException(status_code=400, detail="stageId é obrigatório")
    template = await storage.create_integration_template(request.name.strip(), request.mapping, request.stageId.strip())
    logger.info("Integration template %s created (%s)", template.id, template.name)
    return integration_template_to_dict(template)


@router.patch("/templates/integrations/{template_id}")
async def update_integration_template(template_id: str, request: IntegrationTemplatePatch):
    _check_name(request.name)
    _check_mapping(request.mapping)
    fields: Dict[str, Any] = {}
    if request.name is not None:
        fields["name"] = request.name.strip()
    if request.mapping is not None:
        fields["mapping"] = request.mapping
    if request.stageId is not None:
        fields["stage_id"] = request.stageId.strip()

    template = await storage.update_integration_template(template_id, fields)
    if template is None:
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return integration_template_to_dict(template)


@router.delete("/templates/integrations/{template_id}")
async def delete_integration_template(template_id: str):
    if not await storage.delete_integration_template(template_id):
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return {"ok": True}


# ---------- Labels ----------

@router.get("/templates/labels")
async def list_label_templates():
    templates = await storage.list_label_templates()
    return [label_template_to_dict(t) for t in templates]


@router.get("/templates/labels/{template_id}")
async def get_label_template(template_id: str):
    template = await storage.get_label_template(template_id)
    if template is None:
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return label_template_to_dict(template)


@router.post("/templates/labels", status_code=201)
async def create_label_template(request: LabelTemplateRequest):
    _check_name(request.name)
    _check_mapping(request.mapping)
    template = await storage.create_label_template(request.name.strip(), request.mapping, request.logoUrl)
    logger.info("Label template %s created (%s)", template.id, template.name)
    return label_template_to_dict(template)


@router.patch("/templates/labels/{template_id}")
async def update_label_template(template_id: str, request: LabelTemplatePatch):
    _check_name(request.name)
    _check_mapping(request.mapping)
    fields: Dict[str, Any] = {}
    if request.name is not None:
        fields["name"] = request.name.strip()
    if request.mapping is not None:
        fields["mapping"] = request.mapping
    if request.logoUrl is not None:
        fields["logo_url"] = request.logoUrl or None

    template = await storage.update_label_template(template_id, fields)
    if template is None:
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return label_template_to_dict(template)


@router.delete("/templates/labels/{template_id}")
async def delete_label_template(template_id: str):
    if not await storage.delete_label_template(template_id):
        raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
    return {"ok": True}
