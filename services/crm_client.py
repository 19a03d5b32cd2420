"""
CRM REST client (leads, tags, businesses).

One HTTP request per operation and no retries; a non-2xx answer raises
CrmApiError carrying the body text and a structured reading of it. Calls are
held to a per-minute budget below the CRM's own rate limit.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from services.errors import CrmApiError, CrmErrorDetail
from settings import CRM_API_TOKEN, CRM_API_URL, CRM_CALLS_PER_MINUTE, CRM_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

DUPLICATE_CONTACT_MARKER = "lead-with-same-contact-exists"
_EMBEDDED_EMAIL = re.compile(r'"email"\s*:\s*"([^"]+)"')


def _find_email(node: Any) -> Optional[str]:
    """Depth-first search for the first non-empty "email" value in a decoded JSON body."""
    if isinstance(node, dict):
        value = node.get("email")
        if isinstance(value, str) and value.strip():
            return value.strip()
        for child in node.values():
            found = _find_email(child)
            if found:
                return found
    elif isinstance(node, list):
        for child in node:
            found = _find_email(child)
            if found:
                return found
    return None


def parse_error_body(body: str) -> CrmErrorDetail:
    """
    Read a CRM error body into a CrmErrorDetail.

    JSON bodies are walked for the duplicate-contact marker and the conflicting
    email. Bodies that are not JSON keep the raw variant unless the marker is
    present, in which case the email is taken from an embedded "email":"..." pair.
    """
    text = body or ""
    if DUPLICATE_CONTACT_MARKER not in text:
        return CrmErrorDetail(CrmErrorDetail.RAW, text)

    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None

    if decoded is not None:
        return CrmErrorDetail(CrmErrorDetail.DUPLICATE_CONTACT, text, conflicting_email=_find_email(decoded))

    match = _EMBEDDED_EMAIL.search(text)
    return CrmErrorDetail(
        CrmErrorDetail.DUPLICATE_CONTACT,
        text,
        conflicting_email=match.group(1) if match else None,
    )


class CallBudget:
    """
    Fixed one-minute window of at most `calls_per_minute` calls. When the
    window is spent, wait() sleeps until it resets (plus a one second margin).
    A budget of 0 disables the limit.
    """

    WINDOW_SECONDS = 60.0
    MARGIN_SECONDS = 1.0

    def __init__(
        self,
        calls_per_minute: int = CRM_CALLS_PER_MINUTE,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.calls_per_minute = max(0, int(calls_per_minute or 0))
        self._clock = clock
        self._sleep = sleep
        self._window_start = clock()
        self.calls_in_window = 0

    async def wait(self) -> None:
        if not self.calls_per_minute:
            return
        now = self._clock()
        if now - self._window_start >= self.WINDOW_SECONDS:
            self._window_start = now
            self.calls_in_window = 0

        if self.calls_in_window >= self.calls_per_minute:
            pause = self.WINDOW_SECONDS - (now - self._window_start) + self.MARGIN_SECONDS
            logger.info("CRM call budget of %d/min spent; waiting %.1fs", self.calls_per_minute, pause)
            await self._sleep(pause)
            self._window_start = self._clock()
            self.calls_in_window = 0

        self.calls_in_window += 1


class CrmClient:
    """Thin async wrapper over the CRM API. Pass `client` to share or mock the transport."""

    def __init__(
        self,
        base_url: str = CRM_API_URL,
        token: str = CRM_API_TOKEN,
        timeout: float = CRM_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        budget: Optional[CallBudget] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.budget = budget or CallBudget()
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        await self.budget.wait()
        resp = await self._client.request(method, url, params=params, json=body, headers=self._headers())
        if resp.status_code < 200 or resp.status_code >= 300:
            text = resp.text
            logger.debug("CRM %s %s -> %s: %s", method, endpoint, resp.status_code, text[:300])
            raise CrmApiError(resp.status_code, text, parse_error_body(text))
        if not resp.content:
            return {}
        return resp.json()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CrmClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---- leads ----

    async def search_leads_by_email(self, email: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/leads", params={"search": email})
        if not data or not data.get("count", len(data.get("data") or [])):
            return []
        return list(data.get("data") or [])

    async def create_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {key: value for key, value in payload.items() if value not in (None, "")}
        return await self._request("POST", "/leads", body=body)

    async def patch_lead(self, lead_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/leads/{lead_id}", body=changes)

    # ---- tags ----

    async def search_tags_by_name(self, name: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/tags", params={"search": name})
        return list((data or {}).get("data") or [])

    # ---- businesses ----

    async def list_lead_deals(self, lead_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/leads/{lead_id}/businesses")
        return list((data or {}).get("data") or [])

    async def create_deal(self, lead_id: str, stage_id: str, external_id: str, total: float) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/businesses",
            body={
                "leadId": lead_id,
                "stageId": stage_id,
                "externalId": external_id,
                "total": total,
            },
        )
