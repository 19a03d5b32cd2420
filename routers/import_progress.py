"""
Import job progress: polling endpoint and server-sent event stream.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Request
from starlette.responses import StreamingResponse

from services.errors import JobNotFoundError
from services.job_events import TERMINAL_STATUSES, job_events
from services.progress_tracker import get_job_snapshot

router = APIRouter()
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@router.get("/import-csv/{job_id}")
async def get_import_progress(job_id: str) -> Dict[str, Any]:
    snapshot = await get_job_snapshot(job_id)
    if snapshot is None:
        raise JobNotFoundError(f"Job não encontrado: {job_id}")
    return snapshot


async def _event_stream(job_id: str, request: Request, first: Dict[str, Any]) -> AsyncIterator[str]:
    async with job_events.subscribe(job_id) as queue:
        # re-read after subscribing so no patch between the two reads is lost
        snapshot = await get_job_snapshot(job_id) or first
        yield _sse(snapshot)
        if snapshot.get("status") in TERMINAL_STATUSES:
            return

        while True:
            if await request.is_disconnected():
                logger.debug("SSE client for job %s disconnected", job_id)
                return
            try:
                snapshot = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            yield _sse(snapshot)
            if snapshot.get("status") in TERMINAL_STATUSES:
                return


@router.get("/import-csv/{job_id}/events")
async def stream_import_progress(job_id: str, request: Request):
    snapshot = await get_job_snapshot(job_id)
    if snapshot is None:
        raise JobNotFoundError(f"Job não encontrado: {job_id}")
    return StreamingResponse(
        _event_stream(job_id, request, snapshot),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
