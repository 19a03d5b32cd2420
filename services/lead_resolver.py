"""
Lead upsert + idempotent deal creation for one normalized sale row.

Outcomes:
    created  - a new business was created for the transaction
    exists   - the lead already has a business with externalId == transaction id
    skipped  - no lead could be resolved
Errors raised by the CRM client propagate; the import driver counts them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.crm_client import CrmClient
from services.errors import CrmApiError
from services.row_normalizer import NormalizedSaleRow

logger = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_EXISTS = "exists"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass
class ResolvedLead:
    id: str
    tags: List[Dict[str, Any]] = field(default_factory=list)

    def has_tag(self, tag_id: str) -> bool:
        return any(str(tag.get("id")) == str(tag_id) for tag in self.tags)


@dataclass
class UpsertResult:
    status: str
    message: str
    email: str = ""
    name: str = ""
    lead_id: Optional[str] = None


def _tag_refs(tags: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"id": tag.get("id")} for tag in tags if tag.get("id") is not None]


class LeadUpsertResolver:
    """
    Resolves a lead for each row and makes sure exactly one business exists per
    transaction id. Tag lookups are cached per instance; one instance per import run.
    """

    def __init__(self, crm: CrmClient, stage_id: str, source_label: str):
        self.crm = crm
        self.stage_id = stage_id
        self.source_label = source_label
        self._tag_cache: Dict[str, Optional[Dict[str, Any]]] = {}

    async def upsert(self, row: NormalizedSaleRow) -> UpsertResult:
        lead = await self.resolve_lead(row)

        if lead is not None and row.product_name:
            await self._attach_product_tag(lead, row.product_name)

        if lead is None:
            return UpsertResult(
                status=OUTCOME_SKIPPED,
                message="Sem leadId - não foi possível vincular",
                email=row.email,
                name=row.name,
            )

        deals = await self.crm.list_lead_deals(lead.id)
        if any(str(deal.get("externalId") or "") == row.transaction_id for deal in deals):
            return UpsertResult(
                status=OUTCOME_EXISTS,
                message=f"Business já existe ({row.transaction_id[:8]}...)",
                email=row.email,
                name=row.name,
                lead_id=lead.id,
            )

        await self.crm.create_deal(lead.id, self.stage_id, row.transaction_id, row.total_value)
        return UpsertResult(
            status=OUTCOME_CREATED,
            message=f"Negócio criado: R$ {row.total_value:.2f}",
            email=row.email,
            name=row.name,
            lead_id=lead.id,
        )

    async def resolve_lead(self, row: NormalizedSaleRow) -> Optional[ResolvedLead]:
        matches = await self.crm.search_leads_by_email(row.email)
        if not matches:
            return await self._create_lead(row)

        existing = matches[0]
        lead = ResolvedLead(id=str(existing.get("id")), tags=list(existing.get("tags") or []))
        changes = self.minimal_patch(existing, row)
        if changes:
            logger.debug("Patching lead %s with %s", lead.id, sorted(changes))
            await self.crm.patch_lead(lead.id, changes)
        return lead

    @staticmethod
    def minimal_patch(existing: Dict[str, Any], row: NormalizedSaleRow) -> Dict[str, Any]:
        """Fields the row can fill in without overwriting anything the lead already has."""
        changes: Dict[str, Any] = {}
        if row.phone and not existing.get("phone"):
            changes["phone"] = row.phone
        if row.tax_id and not existing.get("taxId"):
            changes["taxId"] = row.tax_id
        existing_address = existing.get("address") or {}
        if row.address is not None and row.address.zip and not existing_address.get("zip"):
            changes["address"] = row.address.to_payload()
        return changes

    async def _create_lead(self, row: NormalizedSaleRow) -> Optional[ResolvedLead]:
        payload = {
            "name": row.name,
            "email": row.email,
            "phone": row.phone or None,
            "taxId": row.tax_id or None,
            "address": row.address.to_payload() if row.address is not None else None,
            "source": self.source_label,
        }
        try:
            created = await self.crm.create_lead(payload)
        except CrmApiError as exc:
            if not exc.detail.is_duplicate_contact:
                raise
            conflicting = exc.detail.conflicting_email
            if not conflicting:
                raise
            logger.info("Lead %s conflicts with existing contact %s; re-resolving", row.email, conflicting)
            matches = await self.crm.search_leads_by_email(conflicting)
            if not matches:
                raise
            existing = matches[0]
            return ResolvedLead(id=str(existing.get("id")), tags=list(existing.get("tags") or []))

        lead_id = (created or {}).get("id")
        if not lead_id:
            return None
        return ResolvedLead(id=str(lead_id), tags=list((created or {}).get("tags") or []))

    async def _attach_product_tag(self, lead: ResolvedLead, product_name: str) -> None:
        try:
            tag = await self._find_tag(product_name)
            if tag is None or lead.has_tag(tag["id"]):
                return
            tags = _tag_refs(lead.tags) + [{"id": tag["id"]}]
            await self.crm.patch_lead(lead.id, {"tags": tags})
            lead.tags = tags
        except Exception as exc:
            logger.warning("Tag attach failed for lead %s (%s): %s", lead.id, product_name, exc)

    async def _find_tag(self, product_name: str) -> Optional[Dict[str, Any]]:
        if product_name in self._tag_cache:
            return self._tag_cache[product_name]
        matches = await self.crm.search_tags_by_name(product_name)
        tag = matches[0] if matches and matches[0].get("id") is not None else None
        self._tag_cache[product_name] = tag
        return tag
