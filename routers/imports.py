"""
CSV Import Router
Preview, start, resume, cancel and dismiss CRM import jobs.
"""
from fastapi import APIRouter, UploadFile, File, HTTPException, BackgroundTasks, Form
from typing import Any, Dict, Optional
import json
import logging
import uuid

from services.concurrency_control import import_lease, lock_to_dict
from services.import_service import import_service
from services.platforms import ImportSource, Platform, resolve_import_source
from services.storage import storage, job_to_dict
from services.errors import TemplateNotFoundError
from settings import IMPORT_MAX_UPLOAD_BYTES, parse_delay_ms

logger = logging.getLogger(__name__)
router = APIRouter()


async def read_csv_upload(file: UploadFile, request_id: str) -> bytes:
    logger.info(f"[{request_id}] Upload filename={file.filename!r} content_type={file.content_type!r}")

    if not file.filename or not file.filename.lower().endswith(".csv"):
        logger.warning(f"[{request_id}] Reject non-CSV filename={file.filename!r}")
        raise HTTPException(status_code=400, detail="Only CSV files are allowed")

    content = await file.read()
    size = len(content or b"")
    logger.info(f"[{request_id}] Received payload size={size} bytes")

    if size == 0:
        raise HTTPException(status_code=400, detail="Empty file")
    if size > IMPORT_MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {IMPORT_MAX_UPLOAD_BYTES // (1024 * 1024)}MB",
        )
    return content


def parse_mapping_field(raw: Optional[str]) -> Optional[Dict[str, str]]:
    if raw is None or not raw.strip():
        return None
    try:
        mapping = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="customMapping must be valid JSON")
    if not isinstance(mapping, dict):
        raise HTTPException(status_code=400, detail="customMapping must be a JSON object")
    return {str(k): str(v) for k, v in mapping.items() if v is not None}


async def resolve_source(
    platform: Optional[str],
    custom_mapping: Optional[str],
    stage_id: Optional[str],
    template_id: Optional[str],
) -> ImportSource:
    if template_id:
        template = await storage.get_integration_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template não encontrado: {template_id}")
        return ImportSource.custom(template.mapping or {}, template.stage_id, label=f"CSV {template.name}")
    return resolve_import_source(platform, parse_mapping_field(custom_mapping), stage_id)


@router.post("/import-csv/preview")
async def preview_import(
    file: UploadFile = File(...),
    platform: Optional[str] = Form(None),
    customMapping: Optional[str] = Form(None),
    stageId: Optional[str] = Form(None),
    templateId: Optional[str] = Form(None),
    delayMs: Optional[str] = Form(None),
):
    request_id = str(uuid.uuid4())
    content = await read_csv_upload(file, request_id)

    source = None
    if platform or customMapping or templateId:
        source = await resolve_source(platform, customMapping, stageId or "preview", templateId)
    return import_service.preview(content, source, parse_delay_ms(delayMs))


@router.post("/import-csv/start")
async def start_import(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    platform: Optional[str] = Form(None),
    customMapping: Optional[str] = Form(None),
    stageId: Optional[str] = Form(None),
    templateId: Optional[str] = Form(None),
    delayMs: Optional[str] = Form(None),
    delay: Optional[str] = Form(None),
):
    request_id = str(uuid.uuid4())
    content = await read_csv_upload(file, request_id)
    source = await resolve_source(platform, customMapping, stageId, templateId)
    delay_ms = parse_delay_ms(delayMs if delayMs is not None else delay)

    started = await import_service.start_import(content, file.filename, source, delay_ms)
    background_tasks.add_task(import_service.execute, started)
    logger.info(f"[{request_id}] Background import scheduled job={started.job.id} rows={len(started.rows)}")

    return {
        "jobId": started.job.id,
        "total": started.job.total_rows,
        "filtered": started.job.filtered_rows,
        "platform": source.platform.value,
        "delayMs": delay_ms,
        "estimate": import_service.preview(content, source, delay_ms)["estimate"],
        "requestId": request_id,
    }


@router.post("/import-csv/{job_id}/resume")
async def resume_import(
    job_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    delayMs: Optional[str] = Form(None),
):
    request_id = str(uuid.uuid4())
    content = await read_csv_upload(file, request_id)
    delay_ms = parse_delay_ms(delayMs, default=None) if delayMs is not None else None

    started = await import_service.resume_import(job_id, content, delay_ms)
    background_tasks.add_task(import_service.execute, started)

    return {
        "jobId": started.job.id,
        "resumedFrom": started.start_index,
        "remaining": len(started.rows) - started.start_index,
        "message": f"Retomando job {started.job.id} do registro {started.start_index}",
    }


@router.get("/import-csv/jobs")
async def list_jobs(limit: int = 20):
    jobs = await storage.list_import_jobs(limit=max(1, min(limit, 100)))
    return [job_to_dict(job) for job in jobs]


@router.get("/import-csv/active")
async def active_job() -> Dict[str, Any]:
    job = await storage.get_active_import_job()
    return {"job": job_to_dict(job) if job is not None else None}


@router.get("/import-csv/lock")
async def get_lock():
    return lock_to_dict(await import_lease.get_lock())


@router.post("/import-csv/lock/release")
async def release_lock():
    await import_lease.force_release()
    return lock_to_dict(await import_lease.get_lock())


@router.post("/import-csv/{job_id}/cancel")
async def cancel_import(job_id: str):
    job = await import_service.cancel(job_id)
    return job_to_dict(job)


@router.delete("/import-csv/{job_id}")
async def delete_import(job_id: str):
    await import_service.delete(job_id)
    return {"ok": True, "jobId": job_id}


@router.get("/import-csv/platforms")
async def list_platforms():
    return [p.value for p in Platform if p is not Platform.CUSTOM]
