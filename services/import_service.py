"""
CSV import orchestration: preview, start, resume, execute, cancel, delete.

Routers call start_import / resume_import synchronously (validation and lease
errors surface as HTTP errors) and schedule execute() as a background task.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from database import ImportJob
from services.column_mapper import (
    FIELD_LABELS,
    REQUIRED_IMPORT_FIELDS,
    auto_detect_mapping,
    prune_missing_optional,
    validate_mapping,
)
from services.concurrency_control import ImportLeaseController, import_lease, lock_to_dict
from services.crm_client import CrmClient
from services.csv_parser import decode_csv_bytes, parse_csv, parse_headers
from services.errors import (
    FatalJobError,
    ImportLockedError,
    ImportValidationError,
    JobNotFoundError,
)
from services.import_driver import DriverResult, ImportCounters, ImportDriver
from services.job_events import JobEventBus, job_events
from services.lead_resolver import LeadUpsertResolver
from services.platforms import ImportSource, Platform
from services.progress_tracker import JobProgressStore
from services.row_normalizer import StatusFilterResult, filter_paid_rows
from services.storage import StorageService, job_to_dict, storage
from services.time_estimate import build_estimate, estimate_seconds
from settings import IMPORT_DEFAULT_DELAY_MS

logger = logging.getLogger(__name__)


@dataclass
class PreparedImport:
    headers: List[str]
    total_rows: int
    mapping: Dict[str, str]
    filter_result: StatusFilterResult
    rows: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class StartedImport:
    job: ImportJob
    rows: List[Dict[str, str]]
    source: ImportSource
    lease_token: str
    start_index: int = 0
    counters: Optional[ImportCounters] = None


def _lease_ttl(paid_rows: int, delay_ms: int) -> int:
    # generous margin over the estimate; checkpoints renew it anyway
    return int(estimate_seconds(paid_rows, delay_ms=delay_ms) * 1.5)


class ImportService:
    def __init__(
        self,
        store: StorageService = storage,
        lease: ImportLeaseController = import_lease,
        events: JobEventBus = job_events,
        crm_factory: Callable[[], CrmClient] = CrmClient,
    ):
        self.store = store
        self.lease = lease
        self.events = events
        self.crm_factory = crm_factory

    # ---- validation ----

    def prepare(self, content: bytes, source: ImportSource) -> PreparedImport:
        text = decode_csv_bytes(content or b"")
        rows = parse_csv(text)
        if not rows:
            raise ImportValidationError("CSV vazio ou inválido")
        headers = parse_headers(text)

        mapping = dict(source.mapping)
        if source.platform is not Platform.CUSTOM:
            mapping = prune_missing_optional(mapping, headers, REQUIRED_IMPORT_FIELDS)

        validation = validate_mapping(mapping, headers, REQUIRED_IMPORT_FIELDS)
        if not validation.valid:
            raise ImportValidationError(
                "Mapeamento inválido: " + ", ".join(validation.missing_labels),
                details={**validation.to_dict(), "csvHeaders": headers[:20]},
            )

        result = filter_paid_rows(rows, mapping)
        if not result.rows:
            raise ImportValidationError(
                f'Nenhum registro com status "{mapping.get("statusFilter")}" encontrado',
                details={**result.diagnostics(headers), "totalRows": len(rows)},
            )

        return PreparedImport(
            headers=headers,
            total_rows=len(rows),
            mapping=mapping,
            filter_result=result,
            rows=result.rows,
        )

    def preview(self, content: bytes, source: Optional[ImportSource] = None, delay_ms: int = 0) -> Dict[str, Any]:
        """Headers, suggested mapping and paid-row diagnostics without starting anything."""
        text = decode_csv_bytes(content or b"")
        headers = parse_headers(text)
        rows = parse_csv(text)
        if not headers:
            raise ImportValidationError("CSV vazio ou inválido")

        if source is not None:
            mapping = dict(source.mapping)
            if source.platform is not Platform.CUSTOM:
                mapping = prune_missing_optional(mapping, headers, REQUIRED_IMPORT_FIELDS)
        else:
            mapping = auto_detect_mapping(headers)

        validation = validate_mapping(mapping, headers, REQUIRED_IMPORT_FIELDS)
        paid = filter_paid_rows(rows, mapping) if mapping.get("status") and mapping.get("statusFilter") else None
        paid_rows = len(paid.rows) if paid is not None else 0

        return {
            "headers": headers,
            "mapping": mapping,
            "fieldLabels": FIELD_LABELS,
            "validation": validation.to_dict(),
            "totalRows": len(rows),
            "paidRows": paid_rows,
            "uniqueStatuses": (paid.observed_statuses[:10] if paid is not None else []),
            "estimate": build_estimate(len(rows), paid_rows, delay_ms),
        }

    # ---- start / resume ----

    async def start_import(
        self,
        content: bytes,
        filename: str,
        source: ImportSource,
        delay_ms: int = IMPORT_DEFAULT_DELAY_MS,
    ) -> StartedImport:
        prepared = self.prepare(content, source)
        paid_rows = len(prepared.rows)

        token = await self.lease.acquire(
            platform=source.platform.value,
            filename=filename,
            ttl_seconds=_lease_ttl(paid_rows, delay_ms),
        )
        if token is None:
            lock = await self.lease.get_lock()
            raise ImportLockedError("Já existe uma importação em andamento", lock=lock_to_dict(lock))

        try:
            job = await self.store.create_import_job(
                status="pending",
                platform=source.platform.value,
                filename=filename,
                stage_id=source.stage_id,
                mapping=prepared.mapping,
                source_label=source.source_label,
                delay_ms=delay_ms,
                total_rows=paid_rows,
                filtered_rows=prepared.filter_result.filtered_out,
                message="Iniciando importação...",
                lease_owner=token,
            )
            await self.lease.attach_job(token, job.id)
        except Exception:
            await self.lease.release(token, status="error", message="Falha ao criar job")
            raise

        logger.info(
            "Import job %s created: %s (%s) paid=%d filtered=%d",
            job.id, filename, source.platform.value, paid_rows, prepared.filter_result.filtered_out,
        )
        return StartedImport(job=job, rows=prepared.rows, source=source.with_mapping(prepared.mapping), lease_token=token)

    async def resume_import(self, job_id: str, content: bytes, delay_ms: Optional[int] = None) -> StartedImport:
        job = await self.store.get_import_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job não encontrado: {job_id}")

        source = ImportSource(
            platform=Platform(job.platform),
            mapping=dict(job.mapping or {}),
            stage_id=job.stage_id or "",
            label=job.source_label or "",
        )
        prepared = self.prepare(content, source)
        start_index = job.last_processed_index or 0
        if start_index >= len(prepared.rows):
            raise ImportValidationError("Job já foi concluído", details={"lastProcessedIndex": start_index})

        effective_delay = job.delay_ms if delay_ms is None else delay_ms
        remaining = len(prepared.rows) - start_index
        token = await self.lease.acquire(
            platform=job.platform,
            filename=job.filename,
            job_id=job.id,
            ttl_seconds=_lease_ttl(remaining, effective_delay),
        )
        if token is None:
            lock = await self.lease.get_lock()
            raise ImportLockedError("Já existe uma importação em andamento", lock=lock_to_dict(lock))

        updated = await self.store.update_import_job(
            job.id,
            {
                "status": "processing",
                "total_rows": len(prepared.rows),
                "delay_ms": effective_delay,
                "lease_owner": token,
                "message": f"Retomando do registro {start_index}...",
            },
        )
        if updated is None:
            await self.lease.release(token, status="cancelled")
            raise JobNotFoundError(f"Job não encontrado: {job_id}")
        self.events.publish(updated.id, job_to_dict(updated))

        logger.info("Resuming import job %s from row %d of %d", job.id, start_index + 1, len(prepared.rows))
        return StartedImport(
            job=updated,
            rows=prepared.rows,
            source=source.with_mapping(prepared.mapping),
            lease_token=token,
            start_index=start_index,
            counters=ImportCounters.from_job(updated),
        )

    # ---- execution ----

    async def execute(self, started: StartedImport) -> Optional[DriverResult]:
        """Run the driver for a started/resumed job. Never raises; failures end in status 'error'."""
        job = started.job
        crm = self.crm_factory()
        progress = JobProgressStore(
            store=self.store,
            events=self.events,
            lease=self.lease,
            lease_token=started.lease_token,
            lease_ttl_seconds=_lease_ttl(len(started.rows) - started.start_index, job.delay_ms),
        )
        resolver = LeadUpsertResolver(crm, stage_id=started.source.stage_id, source_label=started.source.source_label)
        driver = ImportDriver(resolver, progress, started.source.mapping, delay_ms=job.delay_ms)

        lease_status = "error"
        lease_message: Optional[str] = None
        try:
            result = await driver.run(
                job.id,
                started.rows,
                start_index=started.start_index,
                counters=started.counters,
            )
            lease_status = result.status
            lease_message = result.message
            return result
        except Exception as exc:
            fatal = FatalJobError(str(exc) or exc.__class__.__name__)
            logger.exception("Import job %s aborted: %s", job.id, fatal)
            lease_message = f"Erro: {fatal}"
            try:
                await progress.checkpoint(job.id, {"status": "error", "message": lease_message})
            except Exception:
                logger.exception("Could not mark import job %s as error", job.id)
            return None
        finally:
            await self.lease.release(started.lease_token, status=lease_status, message=lease_message)
            await crm.close()

    # ---- job management ----

    async def get_job(self, job_id: str) -> ImportJob:
        job = await self.store.get_import_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job não encontrado: {job_id}")
        return job

    async def cancel(self, job_id: str) -> ImportJob:
        job = await self.get_job(job_id)
        if job.status in ("completed", "error", "cancelled"):
            return job
        updated = await self.store.update_import_job(
            job_id, {"status": "cancelled", "message": "Importação cancelada pelo usuário"}
        )
        if updated is None:
            raise JobNotFoundError(f"Job não encontrado: {job_id}")
        self.events.publish(job_id, job_to_dict(updated))
        logger.info("Import job %s cancelled", job_id)
        return updated

    async def delete(self, job_id: str) -> None:
        job = await self.get_job(job_id)
        deleted = await self.store.delete_import_job(job_id)
        if not deleted:
            raise JobNotFoundError(f"Job não encontrado: {job_id}")
        self.events.publish(job_id, {"id": job_id, "status": "deleted"})
        logger.info("Import job %s deleted", job_id)


import_service = ImportService()
