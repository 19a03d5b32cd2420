"""
Sequential batch import of paid sale rows into the CRM.

Rows are handled strictly in file order, one at a time. Between rows the
driver re-reads the job status (cooperative cancellation) and sleeps for the
configured delay; progress is checkpointed at a throttled cadence.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from services.lead_resolver import (
    LeadUpsertResolver,
    OUTCOME_CREATED,
    OUTCOME_ERROR,
    OUTCOME_EXISTS,
    OUTCOME_SKIPPED,
)
from services.progress_tracker import JobProgressStore
from services.row_normalizer import SkipReason, normalize_row, safe_string
from settings import IMPORT_ERROR_TAIL

logger = logging.getLogger(__name__)

MIN_CHECKPOINT_INTERVAL = 10
MAX_CHECKPOINT_INTERVAL = 500


def checkpoint_interval(total: int) -> int:
    return max(MIN_CHECKPOINT_INTERVAL, min(MAX_CHECKPOINT_INTERVAL, total // 100))


def completion_message(counters: "ImportCounters") -> str:
    return (
        f"✅ Concluído! Criados: {counters.successes}, Existentes: {counters.existing}, "
        f"Erros: {counters.errors}, Ignorados: {counters.skipped}"
    )


@dataclass
class ImportCounters:
    processed: int = 0
    successes: int = 0
    existing: int = 0
    errors: int = 0
    skipped: int = 0
    error_details: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_job(cls, job: Any) -> "ImportCounters":
        return cls(
            processed=job.processed_rows or 0,
            successes=job.success_count or 0,
            existing=job.existing_count or 0,
            errors=job.error_count or 0,
            skipped=job.skipped_count or 0,
            error_details=list(job.error_details or []),
        )

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_CREATED:
            self.successes += 1
        elif outcome == OUTCOME_EXISTS:
            self.existing += 1
        elif outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        elif outcome == OUTCOME_ERROR:
            self.errors += 1
        else:
            raise ValueError(f"Unknown row outcome: {outcome!r}")
        self.processed += 1

    def add_error_detail(self, email: str, name: str, error: str, limit: int = IMPORT_ERROR_TAIL) -> None:
        self.error_details.append({"email": email, "name": name, "error": error})
        if len(self.error_details) > limit:
            del self.error_details[: len(self.error_details) - limit]

    def to_fields(self) -> Dict[str, Any]:
        return {
            "processed_rows": self.processed,
            "success_count": self.successes,
            "existing_count": self.existing,
            "error_count": self.errors,
            "skipped_count": self.skipped,
            "error_details": list(self.error_details),
        }


@dataclass
class DriverResult:
    status: str
    counters: ImportCounters
    last_processed_index: int
    message: str


class ImportDriver:
    def __init__(
        self,
        resolver: LeadUpsertResolver,
        store: JobProgressStore,
        mapping: Mapping[str, str],
        *,
        delay_ms: int = 0,
        error_tail: int = IMPORT_ERROR_TAIL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.resolver = resolver
        self.store = store
        self.mapping = dict(mapping)
        self.delay_ms = max(0, int(delay_ms or 0))
        self.error_tail = error_tail
        self._sleep = sleep

    async def run(
        self,
        job_id: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        start_index: int = 0,
        counters: Optional[ImportCounters] = None,
    ) -> DriverResult:
        """
        Process rows[start_index:] in order.

        `start_index` is the job's last_processed_index: the number of leading
        rows already consumed by an earlier run. Counters passed in are
        continued, not reset.
        """
        counters = counters or ImportCounters()
        total = len(rows)
        interval = checkpoint_interval(total)
        start_index = max(0, min(start_index, total))
        position = start_index
        last_percent = counters.processed * 100 // total if total else 0
        message = f"Processando registro {start_index + 1} de {total}..."

        logger.info("Import job %s: processing rows %d..%d (delay=%sms)", job_id, start_index + 1, total, self.delay_ms)

        # a cancel issued before the task started must not be overwritten by the start write
        status = await self.store.get_status(job_id)
        if status is None or status == "cancelled":
            logger.info("Import job %s cancelled before it started", job_id)
            return DriverResult("cancelled", counters, position, message)

        alive = await self.store.checkpoint(
            job_id,
            {**counters.to_fields(), "status": "processing", "message": message, "last_processed_index": position},
        )
        if not alive:
            return DriverResult("cancelled", counters, position, message)

        for index in range(start_index, total):
            status = await self.store.get_status(job_id)
            if status is None or status == "cancelled":
                logger.info("Import job %s cancelled before row %d", job_id, index + 1)
                if status is not None:
                    await self._save_position(job_id, counters, position)
                return DriverResult("cancelled", counters, position, message)

            row = rows[index]
            message = await self._process_row(row, counters, total)
            position = index + 1

            percent = counters.processed * 100 // total
            if percent > last_percent or counters.processed % interval == 0:
                last_percent = percent
                alive = await self.store.checkpoint(
                    job_id,
                    {**counters.to_fields(), "message": message, "last_processed_index": position},
                )
                if not alive:
                    return DriverResult("cancelled", counters, position, message)

            if self.delay_ms and index < total - 1:
                await self._sleep(self.delay_ms / 1000.0)

        status = await self.store.get_status(job_id)
        if status is None or status == "cancelled":
            if status is not None:
                await self._save_position(job_id, counters, position)
            return DriverResult("cancelled", counters, position, message)

        final_message = completion_message(counters)
        await self.store.checkpoint(
            job_id,
            {
                **counters.to_fields(),
                "status": "completed",
                "message": final_message,
                "last_processed_index": position,
            },
        )
        logger.info("Import job %s completed: %s", job_id, final_message)
        return DriverResult("completed", counters, position, final_message)

    async def _save_position(self, job_id: str, counters: ImportCounters, position: int) -> None:
        # no status or message key: the stored cancellation stays in place
        await self.store.checkpoint(job_id, {**counters.to_fields(), "last_processed_index": position})

    async def _process_row(self, row: Mapping[str, Any], counters: ImportCounters, total: int) -> str:
        try:
            normalized = normalize_row(row, self.mapping)
            if isinstance(normalized, SkipReason):
                counters.record(OUTCOME_SKIPPED)
                return f"[{counters.processed}/{total}] {normalized.email} - {normalized.reason}"

            result = await self.resolver.upsert(normalized)
            counters.record(result.status)
            return f"[{counters.processed}/{total}] {result.email} - {result.message}"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            email = safe_string(row.get(self.mapping.get("email", ""), ""))
            name = safe_string(row.get(self.mapping.get("name", ""), ""))
            counters.record(OUTCOME_ERROR)
            counters.add_error_detail(email, name, error, self.error_tail)
            logger.warning("Row %d failed for %s: %s", counters.processed, email, error[:200])
            return f"[{counters.processed}/{total}] ❌ {email} - {error[:100]}"
