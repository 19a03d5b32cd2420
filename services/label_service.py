"""
Label batches: physical-product orders from a sales CSV, label issuing through
the carrier, merge/unmerge, printing and tracking export.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from database import LabelOrder
from services import label_fulfillment as fulfillment
from services.carrier_client import CarrierClient, Destinatario, PrintResult
from services.column_mapper import (
    REQUIRED_LABEL_FIELDS,
    prune_missing_optional,
    validate_mapping,
)
from services.csv_parser import decode_csv_bytes, parse_csv, parse_headers
from services.errors import ImportValidationError, LabelOrderNotFoundError
from services.row_normalizer import digits_only, safe_string
from services.storage import StorageService, storage
from settings import LABEL_CARRIER_DELAY_MS

logger = logging.getLogger(__name__)


def order_to_dict(order: LabelOrder) -> Dict[str, Any]:
    return {
        "id": order.id,
        "batchId": order.batch_id,
        "transactionId": order.transaction_id,
        "email": order.email,
        "name": order.name,
        "phone": order.phone,
        "taxId": order.tax_id,
        "productName": order.product_name,
        "purchaseDate": order.purchase_date,
        "address": {
            "zip": order.zip,
            "street": order.address,
            "number": order.number,
            "complement": order.complement,
            "neighborhood": order.neighborhood,
            "city": order.city,
            "state": order.state,
        },
        "serviceCode": order.service_code,
        "enviosTotal": order.envios_total,
        "enviosRealizados": order.envios_realizados,
        "etiquetaStatus": order.status,
        "etiquetas": list(order.etiquetas or []),
        "lastError": order.last_error,
        "isMerged": bool(order.is_merged),
        "mergedTransactions": list(order.merged_transactions or []),
        "mergedProductNames": list(order.merged_product_names or []),
    }


@dataclass
class IssueOutcome:
    order_id: str
    transaction_id: str
    status: str
    etiqueta: Optional[str] = None
    envio_numero: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "transactionId": self.transaction_id,
            "status": self.status,
            "etiqueta": self.etiqueta,
            "envioNumero": self.envio_numero,
            "error": self.error,
        }


@dataclass
class LabelBatch:
    batch_id: str
    total_rows: int
    orders: List[LabelOrder] = field(default_factory=list)


def _cell(row: Mapping[str, Any], mapping: Mapping[str, str], key: str) -> str:
    header = mapping.get(key)
    return safe_string(row.get(header)) if header else ""


def _is_label_paid(row: Mapping[str, Any], mapping: Mapping[str, str]) -> bool:
    if not mapping.get("status"):
        return True
    status = _cell(row, mapping, "status")
    paid_value = mapping.get("statusFilter")
    if paid_value:
        return status == paid_value
    return status in fulfillment.LABEL_PAID_STATUSES


class LabelService:
    def __init__(
        self,
        store: StorageService = storage,
        carrier_factory: Callable[[], CarrierClient] = CarrierClient,
        delay_ms: int = LABEL_CARRIER_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.carrier_factory = carrier_factory
        self.delay_ms = delay_ms
        self._sleep = sleep

    # ---- batch creation ----

    async def resolve_mapping(self, mapping: Optional[Mapping[str, str]], template_id: Optional[str]) -> Dict[str, str]:
        if template_id:
            template = await self.store.get_label_template(template_id)
            if template is None:
                raise ImportValidationError(f"Template não encontrado: {template_id}")
            return dict(template.mapping or {})
        if mapping:
            return {k: str(v).strip() for k, v in mapping.items() if v is not None and str(v).strip()}
        return dict(fulfillment.DEFAULT_LABEL_MAPPING)

    async def create_batch(
        self,
        content: bytes,
        mapping: Optional[Mapping[str, str]] = None,
        template_id: Optional[str] = None,
    ) -> LabelBatch:
        text = decode_csv_bytes(content or b"")
        rows = parse_csv(text)
        if not rows:
            raise ImportValidationError("CSV vazio ou inválido")
        headers = parse_headers(text)

        resolved = await self.resolve_mapping(mapping, template_id)
        if not mapping and not template_id:
            resolved = prune_missing_optional(resolved, headers, REQUIRED_LABEL_FIELDS)
        validation = validate_mapping(resolved, headers, REQUIRED_LABEL_FIELDS)
        if not validation.valid:
            raise ImportValidationError(
                "Mapeamento inválido: " + ", ".join(validation.missing_labels),
                details={**validation.to_dict(), "csvHeaders": headers[:20]},
            )

        selected = [
            row for row in rows
            if fulfillment.is_physical_product(_cell(row, resolved, "product")) and _is_label_paid(row, resolved)
        ]
        batch_id = str(uuid.uuid4())
        transaction_ids = [_cell(row, resolved, "transactionId") for row in selected]
        records = await self.store.find_label_records(transaction_ids)

        orders: List[Dict[str, Any]] = []
        for row in selected:
            transaction_id = _cell(row, resolved, "transactionId")
            if not transaction_id:
                continue
            previous = records.get(transaction_id, [])
            realizados = len(previous)
            total = max([1, realizados] + [r.envios_total or 1 for r in previous])
            orders.append({
                "batch_id": batch_id,
                "transaction_id": transaction_id,
                "email": _cell(row, resolved, "email").lower(),
                "name": _cell(row, resolved, "name"),
                "phone": _cell(row, resolved, "phone"),
                "tax_id": _cell(row, resolved, "taxId"),
                "product_name": _cell(row, resolved, "product"),
                "purchase_date": _cell(row, resolved, "saleDate"),
                "zip": digits_only(_cell(row, resolved, "zip")),
                "address": _cell(row, resolved, "address"),
                "number": _cell(row, resolved, "number"),
                "complement": _cell(row, resolved, "complement"),
                "neighborhood": _cell(row, resolved, "neighborhood"),
                "city": _cell(row, resolved, "city"),
                "state": _cell(row, resolved, "state"),
                "service_code": (previous[-1].service_code if previous and previous[-1].service_code
                                 else fulfillment.DEFAULT_SERVICE_CODE),
                "envios_total": total,
                "envios_realizados": realizados,
                "status": fulfillment.derive_state(realizados, total).value,
                "etiquetas": [r.etiqueta for r in previous],
            })

        saved = await self.store.create_label_orders(orders) if orders else []
        logger.info(
            "Label batch %s: %d rows, %d physical paid orders, %d with labels already issued",
            batch_id, len(rows), len(saved), sum(1 for o in saved if o.envios_realizados),
        )
        return LabelBatch(batch_id=batch_id, total_rows=len(rows), orders=saved)

    # ---- single-order edits ----

    async def get_order(self, order_id: str) -> LabelOrder:
        order = await self.store.get_label_order(order_id)
        if order is None:
            raise LabelOrderNotFoundError(f"Pedido não encontrado: {order_id}")
        return order

    async def _get_orders(self, order_ids: Sequence[str]) -> List[LabelOrder]:
        orders = await self.store.get_label_orders(order_ids)
        found = {o.id for o in orders}
        missing = [oid for oid in order_ids if oid not in found]
        if missing:
            raise LabelOrderNotFoundError(f"Pedidos não encontrados: {', '.join(missing)}")
        return orders

    async def list_orders(self, batch_id: str) -> List[LabelOrder]:
        return await self.store.list_label_orders(batch_id)

    async def set_planned_count(self, order_id: str, count: int) -> LabelOrder:
        order = await self.get_order(order_id)
        fulfillment.set_planned_count(order, count)
        return await self.store.save_label_order(order)

    async def increment_planned_count(self, order_id: str) -> LabelOrder:
        order = await self.get_order(order_id)
        fulfillment.increment_planned_count(order)
        return await self.store.save_label_order(order)

    async def set_service_code(self, order_id: str, service_code: str) -> LabelOrder:
        if service_code not in fulfillment.SERVICE_CODES:
            raise ValueError(f"Serviço ECT desconhecido: {service_code}")
        order = await self.get_order(order_id)
        order.service_code = service_code
        return await self.store.save_label_order(order)

    # ---- issuing ----

    async def issue_next_label(self, order: LabelOrder, carrier: CarrierClient) -> IssueOutcome:
        if not fulfillment.can_issue(order):
            return IssueOutcome(order.id, order.transaction_id, "skipped",
                                error=f"Etiquetas completas ({order.envios_realizados}/{order.envios_total})")

        destinatario = Destinatario(**fulfillment.destinatario_fields(order))
        try:
            code = await carrier.post_object(destinatario, order.service_code, order.transaction_id)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            logger.warning("Label failed for %s: %s", order.transaction_id, message)
            fulfillment.mark_error(order, message)
            await self.store.save_label_order(order)
            return IssueOutcome(order.id, order.transaction_id, fulfillment.LabelState.ERROR.value, error=message)

        envio_numero = fulfillment.record_issued_label(order, code)
        await self.store.save_label_order(order)
        for transaction_id in fulfillment.original_transactions(order):
            await self.store.add_label_record(
                transaction_id=transaction_id,
                etiqueta=code,
                envio_numero=envio_numero,
                envios_total=order.envios_total,
                service_code=order.service_code,
                destinatario=destinatario.to_dict(),
            )
        return IssueOutcome(order.id, order.transaction_id, order.status, etiqueta=code, envio_numero=envio_numero)

    async def generate(self, order_ids: Sequence[str]) -> List[IssueOutcome]:
        """Issue the next label of each order, one carrier call at a time."""
        orders = await self._get_orders(order_ids)
        carrier = self.carrier_factory()
        outcomes: List[IssueOutcome] = []
        try:
            for idx, order in enumerate(orders):
                outcome = await self.issue_next_label(order, carrier)
                outcomes.append(outcome)
                if self.delay_ms and outcome.status != "skipped" and idx < len(orders) - 1:
                    await self._sleep(self.delay_ms / 1000.0)
        finally:
            await carrier.close()

        logger.info(
            "Label generation: %d ok, %d errors, %d skipped",
            sum(1 for o in outcomes if o.etiqueta),
            sum(1 for o in outcomes if o.status == fulfillment.LabelState.ERROR.value),
            sum(1 for o in outcomes if o.status == "skipped"),
        )
        return outcomes

    # ---- merge ----

    async def merge(self, order_ids: Sequence[str], confirm_mixed_emails: bool = False) -> LabelOrder:
        orders = await self._get_orders(order_ids)
        fields = fulfillment.build_merged_order(orders, confirm_mixed_emails=confirm_mixed_emails)
        [merged] = await self.store.create_label_orders([fields])
        await self.store.set_merged_into([o.id for o in orders], merged.id)
        logger.info("Merged %d orders into %s (%s)", len(orders), merged.id, merged.transaction_id)
        return merged

    async def unmerge(self, merged_id: str) -> List[LabelOrder]:
        merged = await self.get_order(merged_id)
        fulfillment.check_unmerge(merged)
        originals = await self.store.list_folded_orders(merged.id)
        restored: List[LabelOrder] = []
        for order in originals:
            fulfillment.restore_folded(order)
            restored.append(await self.store.save_label_order(order))
        await self.store.delete_label_order(merged.id)
        logger.info("Unmerged %s into %d orders", merged_id, len(restored))
        return restored

    # ---- output ----

    async def _orders_with_labels(self, order_ids: Sequence[str]) -> List[LabelOrder]:
        orders = await self._get_orders(order_ids)
        with_labels = [o for o in orders if o.etiquetas]
        if not with_labels:
            raise ImportValidationError("Nenhum pedido selecionado possui etiqueta")
        return with_labels

    async def print_labels(self, order_ids: Sequence[str], fmt: str = "pdf") -> PrintResult:
        orders = await self._orders_with_labels(order_ids)
        codes = [code for order in orders for code in order.etiquetas]
        carrier = self.carrier_factory()
        try:
            return await carrier.print_labels(codes, fmt)
        finally:
            await carrier.close()

    async def export_tracking(self, order_ids: Sequence[str]) -> str:
        orders = await self._orders_with_labels(order_ids)
        return fulfillment.export_tracking_csv(orders)

    # ---- carrier credentials ----

    async def check_carrier_credentials(self) -> str:
        carrier = self.carrier_factory()
        try:
            return await carrier.check_credentials()
        finally:
            await carrier.close()


label_service = LabelService()
