"""
Storage Service Layer
Database operations for import jobs, mapping templates and label orders/records.
"""
from sqlalchemy import select, delete, desc, update
from typing import List, Optional, Dict, Any, Iterable, Sequence
import logging
from datetime import datetime

from database import (
    AsyncSessionLocal, ImportJob, IntegrationTemplate, LabelTemplate,
    LabelOrder, LabelRecord,
)

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = ("pending", "processing")
LABEL_RECORD_QUERY_CHUNK = 30


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def job_to_dict(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "platform": job.platform,
        "filename": job.filename,
        "stageId": job.stage_id,
        "total": job.total_rows,
        "filtered": job.filtered_rows,
        "processed": job.processed_rows,
        "successes": job.success_count,
        "existing": job.existing_count,
        "errors": job.error_count,
        "skipped": job.skipped_count,
        "lastProcessedIndex": job.last_processed_index,
        "errorDetails": list(job.error_details or []),
        "message": job.message,
        "delayMs": job.delay_ms,
        "createdAt": _iso(job.created_at),
        "updatedAt": _iso(job.updated_at),
    }


def integration_template_to_dict(template: IntegrationTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "mapping": dict(template.mapping or {}),
        "stageId": template.stage_id,
        "createdAt": _iso(template.created_at),
        "updatedAt": _iso(template.updated_at),
    }


def label_template_to_dict(template: LabelTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "mapping": dict(template.mapping or {}),
        "logoUrl": template.logo_url,
        "createdAt": _iso(template.created_at),
        "updatedAt": _iso(template.updated_at),
    }


def chunked(values: Sequence[str], size: int = LABEL_RECORD_QUERY_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class StorageService:
    """Storage service providing database operations"""

    def get_session(self):
        """Get database session context manager"""
        return AsyncSessionLocal()

    # ---------- Import jobs ----------

    async def create_import_job(self, **fields: Any) -> ImportJob:
        async with self.get_session() as session:
            job = ImportJob(**fields)
            session.add(job)
            await session.commit()
            await session.refresh(job)
            logger.info("Created import job %s (%s, %s)", job.id, job.platform, job.filename)
            return job

    async def get_import_job(self, job_id: str) -> Optional[ImportJob]:
        async with self.get_session() as session:
            return await session.get(ImportJob, job_id)

    async def update_import_job(self, job_id: str, fields: Dict[str, Any]) -> Optional[ImportJob]:
        """Merge-patch a job. Returns None when the job no longer exists."""
        async with self.get_session() as session:
            job = await session.get(ImportJob, job_id)
            if job is None:
                return None
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = datetime.now()
            await session.commit()
            await session.refresh(job)
            return job

    async def list_import_jobs(self, limit: int = 20) -> List[ImportJob]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ImportJob).order_by(desc(ImportJob.created_at)).limit(limit)
            )
            return list(result.scalars().all())

    async def get_active_import_job(self) -> Optional[ImportJob]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ImportJob)
                .where(ImportJob.status.in_(ACTIVE_JOB_STATUSES))
                .order_by(desc(ImportJob.created_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def delete_import_job(self, job_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(delete(ImportJob).where(ImportJob.id == job_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Integration templates ----------

    async def list_integration_templates(self) -> List[IntegrationTemplate]:
        async with self.get_session() as session:
            result = await session.execute(select(IntegrationTemplate).order_by(IntegrationTemplate.name))
            return list(result.scalars().all())

    async def get_integration_template(self, template_id: str) -> Optional[IntegrationTemplate]:
        async with self.get_session() as session:
            return await session.get(IntegrationTemplate, template_id)

    async def create_integration_template(self, name: str, mapping: Dict[str, str], stage_id: str) -> IntegrationTemplate:
        async with self.get_session() as session:
            template = IntegrationTemplate(name=name, mapping=mapping, stage_id=stage_id)
            session.add(template)
            await session.commit()
            await session.refresh(template)
            return template

    async def update_integration_template(self, template_id: str, fields: Dict[str, Any]) -> Optional[IntegrationTemplate]:
        async with self.get_session() as session:
            template = await session.get(IntegrationTemplate, template_id)
            if template is None:
                return None
            for key, value in fields.items():
                setattr(template, key, value)
            template.updated_at = datetime.now()
            await session.commit()
            await session.refresh(template)
            return template

    async def delete_integration_template(self, template_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(delete(IntegrationTemplate).where(IntegrationTemplate.id == template_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Label templates ----------

    async def list_label_templates(self) -> List[LabelTemplate]:
        async with self.get_session() as session:
            result = await session.execute(select(LabelTemplate).order_by(LabelTemplate.name))
            return list(result.scalars().all())

    async def get_label_template(self, template_id: str) -> Optional[LabelTemplate]:
        async with self.get_session() as session:
            return await session.get(LabelTemplate, template_id)

    async def create_label_template(self, name: str, mapping: Dict[str, str], logo_url: Optional[str] = None) -> LabelTemplate:
        async with self.get_session() as session:
            template = LabelTemplate(name=name, mapping=mapping, logo_url=logo_url)
            session.add(template)
            await session.commit()
            await session.refresh(template)
            return template

    async def update_label_template(self, template_id: str, fields: Dict[str, Any]) -> Optional[LabelTemplate]:
        async with self.get_session() as session:
            template = await session.get(LabelTemplate, template_id)
            if template is None:
                return None
            for key, value in fields.items():
                setattr(template, key, value)
            template.updated_at = datetime.now()
            await session.commit()
            await session.refresh(template)
            return template

    async def delete_label_template(self, template_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(delete(LabelTemplate).where(LabelTemplate.id == template_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Label orders ----------

    async def create_label_orders(self, orders: List[Dict[str, Any]]) -> List[LabelOrder]:
        async with self.get_session() as session:
            models = [LabelOrder(**fields) for fields in orders]
            session.add_all(models)
            await session.commit()
            for model in models:
                await session.refresh(model)
            return models

    async def get_label_order(self, order_id: str) -> Optional[LabelOrder]:
        async with self.get_session() as session:
            return await session.get(LabelOrder, order_id)

    async def get_label_orders(self, order_ids: Sequence[str]) -> List[LabelOrder]:
        if not order_ids:
            return []
        async with self.get_session() as session:
            result = await session.execute(select(LabelOrder).where(LabelOrder.id.in_(list(order_ids))))
            by_id = {order.id: order for order in result.scalars().all()}
        return [by_id[order_id] for order_id in order_ids if order_id in by_id]

    async def list_label_orders(self, batch_id: str, include_folded: bool = False) -> List[LabelOrder]:
        async with self.get_session() as session:
            stmt = select(LabelOrder).where(LabelOrder.batch_id == batch_id)
            if not include_folded:
                stmt = stmt.where(LabelOrder.merged_into.is_(None))
            result = await session.execute(stmt.order_by(LabelOrder.created_at, LabelOrder.transaction_id))
            return list(result.scalars().all())

    async def list_folded_orders(self, merged_id: str) -> List[LabelOrder]:
        async with self.get_session() as session:
            result = await session.execute(select(LabelOrder).where(LabelOrder.merged_into == merged_id))
            return list(result.scalars().all())

    async def save_label_order(self, order: LabelOrder) -> LabelOrder:
        async with self.get_session() as session:
            merged = await session.merge(order)
            merged.updated_at = datetime.now()
            await session.commit()
            await session.refresh(merged)
            return merged

    async def set_merged_into(self, order_ids: Sequence[str], merged_id: Optional[str]) -> None:
        if not order_ids:
            return
        async with self.get_session() as session:
            await session.execute(
                update(LabelOrder)
                .where(LabelOrder.id.in_(list(order_ids)))
                .values(merged_into=merged_id, updated_at=datetime.now())
            )
            await session.commit()

    async def delete_label_order(self, order_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(delete(LabelOrder).where(LabelOrder.id == order_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Label records ----------

    async def add_label_record(self, **fields: Any) -> LabelRecord:
        async with self.get_session() as session:
            record = LabelRecord(**fields)
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record

    async def find_label_records(self, transaction_ids: Sequence[str]) -> Dict[str, List[LabelRecord]]:
        """Records grouped by transaction id, oldest first. Queried in chunks of LABEL_RECORD_QUERY_CHUNK ids."""
        unique_ids = list(dict.fromkeys(tid for tid in transaction_ids if tid))
        grouped: Dict[str, List[LabelRecord]] = {}
        async with self.get_session() as session:
            for chunk in chunked(unique_ids):
                result = await session.execute(
                    select(LabelRecord)
                    .where(LabelRecord.transaction_id.in_(list(chunk)))
                    .order_by(LabelRecord.created_at, LabelRecord.envio_numero)
                )
                for record in result.scalars().all():
                    grouped.setdefault(record.transaction_id, []).append(record)
        return grouped


storage = StorageService()
