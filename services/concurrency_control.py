"""
Import lease: one CSV import at a time per deployment.

The lease is a single row in import_locks. Acquire is a conditional UPDATE
(compare-and-set on owner/expiry) so two concurrent starts cannot both win;
the owner token is required to renew or release it.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy import select, update, or_

from database import AsyncSessionLocal, ImportLock, IMPORT_LOCK_KEY, import_lock_seed
from settings import IMPORT_LOCK_TTL_SECONDS

logger = logging.getLogger(__name__)

RELEASE_MESSAGES = {
    "completed": "Importação concluída",
    "error": "Erro na importação",
    "cancelled": "Importação cancelada",
}


def lock_to_dict(lock: Optional[ImportLock], now: Optional[datetime] = None) -> Dict[str, Any]:
    if lock is None:
        return {"isLocked": False, "status": None}
    now = now or datetime.now()
    held = bool(lock.owner) and lock.expires_at is not None and lock.expires_at > now
    return {
        "isLocked": held,
        "status": lock.status,
        "jobId": lock.job_id,
        "platform": lock.platform,
        "filename": lock.filename,
        "acquiredAt": lock.acquired_at.isoformat() if lock.acquired_at else None,
        "expiresAt": lock.expires_at.isoformat() if lock.expires_at else None,
        "message": lock.message,
    }


class ImportLeaseController:
    """
    Exclusive lease with owner token and expiry:
    - acquire succeeds when nobody owns the lease or the owner's lease expired
    - renew pushes the expiry forward (called from job checkpoints)
    - release only by the current owner; force_release for operators
    """

    def __init__(self, key: str = IMPORT_LOCK_KEY, ttl_seconds: int = IMPORT_LOCK_TTL_SECONDS):
        self.key = key
        self.ttl_seconds = ttl_seconds

    async def _ensure_row(self, session) -> None:
        # init_db and the migration seed the row; this covers databases created otherwise
        await session.execute(import_lock_seed(self.key))
        await session.commit()

    async def acquire(
        self,
        *,
        platform: str,
        filename: str,
        job_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """Returns the owner token, or None when the lease is held by someone else."""
        token = str(uuid.uuid4())
        now = datetime.now()
        ttl = max(self.ttl_seconds, int(ttl_seconds or 0))

        async with AsyncSessionLocal() as session:
            await self._ensure_row(session)
            result = await session.execute(
                update(ImportLock)
                .where(ImportLock.key == self.key)
                .where(or_(ImportLock.owner.is_(None), ImportLock.expires_at.is_(None), ImportLock.expires_at < now))
                .values(
                    owner=token,
                    job_id=job_id,
                    platform=platform,
                    filename=filename,
                    status="running",
                    message="Iniciando importação...",
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=ttl),
                    updated_at=now,
                )
            )
            await session.commit()

        if (result.rowcount or 0) != 1:
            logger.info("Import lease busy; refused start for %s (%s)", filename, platform)
            return None
        logger.info("Acquired import lease %s for %s (%s), ttl=%ss", token, filename, platform, ttl)
        return token

    async def attach_job(self, token: str, job_id: str) -> bool:
        return await self._owner_update(token, job_id=job_id)

    async def renew(self, token: str, message: Optional[str] = None, ttl_seconds: Optional[int] = None) -> bool:
        ttl = max(self.ttl_seconds, int(ttl_seconds or 0))
        values: Dict[str, Any] = {"expires_at": datetime.now() + timedelta(seconds=ttl)}
        if message is not None:
            values["message"] = message
        renewed = await self._owner_update(token, **values)
        if not renewed:
            logger.warning("Import lease renew failed for token %s (lost or released)", token)
        return renewed

    async def release(self, token: str, status: str = "completed", message: Optional[str] = None) -> bool:
        released = await self._owner_update(
            token,
            owner=None,
            status=status,
            message=message or RELEASE_MESSAGES.get(status, status),
            expires_at=None,
        )
        if released:
            logger.info("Released import lease %s with status %s", token, status)
        return released

    async def force_release(self) -> None:
        async with AsyncSessionLocal() as session:
            await session.execute(
                update(ImportLock)
                .where(ImportLock.key == self.key)
                .values(owner=None, status="cancelled", message="Liberado manualmente", expires_at=None,
                        updated_at=datetime.now())
            )
            await session.commit()
        logger.warning("Import lease force-released")

    async def get_lock(self) -> Optional[ImportLock]:
        async with AsyncSessionLocal() as session:
            result = await session.execute(select(ImportLock).where(ImportLock.key == self.key))
            return result.scalar_one_or_none()

    async def _owner_update(self, token: str, **values: Any) -> bool:
        if not token:
            return False
        values.setdefault("updated_at", datetime.now())
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                update(ImportLock)
                .where(ImportLock.key == self.key)
                .where(ImportLock.owner == token)
                .values(**values)
            )
            await session.commit()
        return (result.rowcount or 0) == 1


import_lease = ImportLeaseController()
