"""
Import job progress persistence helpers.

The import driver only talks to a JobProgressStore: read the job status
between rows, write merge-patch checkpoints. Each write publishes the new job
snapshot to subscribers and, when the run holds the import lease, renews it.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from services.concurrency_control import ImportLeaseController, import_lease
from services.job_events import JobEventBus, job_events
from services.storage import StorageService, job_to_dict, storage

logger = logging.getLogger(__name__)


class JobProgressStore:
    def __init__(
        self,
        store: StorageService = storage,
        events: JobEventBus = job_events,
        lease: Optional[ImportLeaseController] = import_lease,
        lease_token: Optional[str] = None,
        lease_ttl_seconds: Optional[int] = None,
    ):
        self.store = store
        self.events = events
        self.lease = lease
        self.lease_token = lease_token
        self.lease_ttl_seconds = lease_ttl_seconds

    async def get_status(self, job_id: str) -> Optional[str]:
        job = await self.store.get_import_job(job_id)
        return job.status if job is not None else None

    async def checkpoint(self, job_id: str, fields: Dict[str, Any]) -> bool:
        """
        Persist a progress patch. Returns False when the job document is gone
        (dismissed while running), which the driver treats as a cancellation.
        """
        job = await self.store.update_import_job(job_id, fields)
        if job is None:
            logger.warning("Checkpoint for missing job %s; treating as cancelled", job_id)
            return False

        snapshot = job_to_dict(job)
        self.events.publish(job_id, snapshot)

        if self.lease is not None and self.lease_token:
            await self.lease.renew(self.lease_token, message=fields.get("message"), ttl_seconds=self.lease_ttl_seconds)

        logger.debug(
            "Checkpoint job %s processed=%s status=%s",
            job_id,
            snapshot["processed"],
            snapshot["status"],
        )
        return True


async def get_job_snapshot(job_id: str, store: StorageService = storage) -> Optional[Dict[str, Any]]:
    job = await store.get_import_job(job_id)
    return job_to_dict(job) if job is not None else None
