"""
Parcel fulfillment state machine for physical-product orders.

An order plans `envios_total` parcels and has issued `envios_realizados`
labels so far:

    pending    realizados == 0
    partial    0 < realizados < total
    generated  realizados == total
    error      last carrier call failed; retryable, counts unchanged

The functions here mutate any object carrying the LabelOrder attributes
(envios_total, envios_realizados, status, etiquetas, last_error, merge fields).
"""
from __future__ import annotations

import io
import csv
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence

from services.errors import IllegalTransitionError, MergeConfirmationRequired
from services.row_normalizer import safe_string

logger = logging.getLogger(__name__)

MAX_PLANNED_PARCELS = 4

SERVICE_CODES: Dict[str, str] = {
    "201501": "IMPRESSO Normal Módico",
    "3298": "PAC Prata/Ouro/Platinum",
    "3220": "SEDEX Prata/Ouro/Platinum",
}
DEFAULT_SERVICE_CODE = "201501"

PHYSICAL_MARKERS = ("físico", "fisico", "kit")
LABEL_PAID_STATUSES = ("Aprovado", "Completo")

# Hotmart sales export, used when a label batch has no template or mapping
DEFAULT_LABEL_MAPPING: Dict[str, str] = {
    "product": "Produto",
    "transactionId": "Código da transação",
    "status": "Status da transação",
    "name": "Comprador(a)",
    "taxId": "Documento",
    "email": "Email do(a) Comprador(a)",
    "phone": "Telefone",
    "zip": "Código postal",
    "city": "Cidade",
    "state": "Estado / Província",
    "neighborhood": "Bairro",
    "address": "Endereço",
    "number": "Número",
    "complement": "Complemento",
    "saleDate": "Data da transação",
    "total": "Valor de compra com impostos",
}

TRACKING_CSV_HEADER = (
    "Código da compra",
    "Data da compra",
    "Produto",
    "Responsável pela entrega",
    "Código de rastreio",
    "Status de envio",
    "Link de rastreio",
)
TRACKING_RESPONSIBLE = "Envio Próprio"
TRACKING_STATUS = "Enviado"
TRACKING_LINK = "https://rastreamento.correios.com.br"
MERGE_SEPARATOR = " + "


class LabelState(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    GENERATED = "generated"
    ERROR = "error"


# error is reachable from any state that can still issue a label
LEGAL_TRANSITIONS: Dict[LabelState, frozenset] = {
    LabelState.PENDING: frozenset({LabelState.PARTIAL, LabelState.GENERATED, LabelState.ERROR}),
    LabelState.PARTIAL: frozenset({LabelState.PARTIAL, LabelState.GENERATED, LabelState.ERROR}),
    LabelState.ERROR: frozenset({LabelState.PARTIAL, LabelState.GENERATED, LabelState.ERROR}),
    LabelState.GENERATED: frozenset(),
}


def is_physical_product(product_name: Any) -> bool:
    name = safe_string(product_name).lower()
    return any(marker in name for marker in PHYSICAL_MARKERS)


def derive_state(realizados: int, total: int) -> LabelState:
    if realizados <= 0:
        return LabelState.PENDING
    if realizados >= total:
        return LabelState.GENERATED
    return LabelState.PARTIAL


def current_state(order: Any) -> LabelState:
    return LabelState(order.status)


def _transition(order: Any, target: LabelState) -> None:
    state = current_state(order)
    if target not in LEGAL_TRANSITIONS[state]:
        raise IllegalTransitionError(
            f"Transição inválida: {state.value} → {target.value} ({order.transaction_id})",
            current_state=state.value,
        )
    order.status = target.value


def is_pending(order: Any) -> bool:
    """Nothing issued yet (an error on the first attempt still counts as pending)."""
    return (order.envios_realizados or 0) == 0 and current_state(order) in (LabelState.PENDING, LabelState.ERROR)


def set_planned_count(order: Any, count: int) -> None:
    if not is_pending(order):
        raise IllegalTransitionError(
            "Quantidade de envios só pode ser alterada antes da primeira etiqueta",
            current_state=order.status,
        )
    if not isinstance(count, int) or count < 1 or count > MAX_PLANNED_PARCELS:
        raise ValueError(f"Quantidade de envios deve estar entre 1 e {MAX_PLANNED_PARCELS}")
    order.envios_total = count


def increment_planned_count(order: Any) -> None:
    realizados = order.envios_realizados or 0
    if not (0 < realizados < order.envios_total) or current_state(order) is LabelState.GENERATED:
        raise IllegalTransitionError(
            "Envio adicional só pode ser incluído em pedidos parciais",
            current_state=order.status,
        )
    order.envios_total += 1


def can_issue(order: Any) -> bool:
    if getattr(order, "merged_into", None):
        return False
    return current_state(order) is not LabelState.GENERATED and (order.envios_realizados or 0) < order.envios_total


def record_issued_label(order: Any, tracking_code: str) -> int:
    """Apply a successful carrier call. Returns the parcel number of the new label."""
    if not can_issue(order):
        raise IllegalTransitionError(
            f"Pedido {order.transaction_id} já possui todas as etiquetas ({order.envios_realizados}/{order.envios_total})",
            current_state=order.status,
        )
    realizados = (order.envios_realizados or 0) + 1
    target = derive_state(realizados, order.envios_total)
    _transition(order, target)
    order.envios_realizados = realizados
    order.etiquetas = list(order.etiquetas or []) + [tracking_code]
    order.last_error = None
    return realizados


def mark_error(order: Any, message: str) -> None:
    _transition(order, LabelState.ERROR)
    order.last_error = message


def original_transactions(order: Any) -> List[str]:
    if getattr(order, "is_merged", False) and order.merged_transactions:
        return list(order.merged_transactions)
    return [order.transaction_id]


def build_merged_order(orders: Sequence[Any], confirm_mixed_emails: bool = False) -> Dict[str, Any]:
    """
    Fields for the synthetic order that replaces `orders` in listings.

    Requires at least two pending, not folded, not already merged orders.
    Orders from different emails need `confirm_mixed_emails`.
    """
    if len(orders) < 2:
        raise IllegalTransitionError("Selecione pelo menos 2 pedidos para mesclar")
    for order in orders:
        if getattr(order, "merged_into", None):
            raise IllegalTransitionError(f"Pedido {order.transaction_id} já está mesclado")
        if getattr(order, "is_merged", False):
            raise IllegalTransitionError(f"Pedido {order.transaction_id} já é uma mesclagem; desfaça antes")
        if not is_pending(order):
            raise IllegalTransitionError(
                f"Pedido {order.transaction_id} já possui etiqueta e não pode ser mesclado",
                current_state=order.status,
            )

    emails = list(dict.fromkeys(safe_string(o.email).lower() for o in orders))
    if len(emails) > 1 and not confirm_mixed_emails:
        raise MergeConfirmationRequired("Pedidos com emails diferentes; confirme a mesclagem", emails=emails)

    transactions: List[str] = []
    member_products: List[str] = []
    for order in orders:
        transactions.extend(original_transactions(order))
        member_products.append(order.product_name)
    products = [name for name in dict.fromkeys(member_products) if name]

    first = orders[0]
    return {
        "batch_id": first.batch_id,
        "transaction_id": MERGE_SEPARATOR.join(transactions),
        "email": first.email,
        "name": first.name,
        "phone": first.phone,
        "tax_id": first.tax_id,
        "product_name": MERGE_SEPARATOR.join(products),
        "purchase_date": first.purchase_date,
        "zip": first.zip,
        "address": first.address,
        "number": first.number,
        "complement": first.complement,
        "neighborhood": first.neighborhood,
        "city": first.city,
        "state": first.state,
        "service_code": first.service_code,
        "envios_total": 1,
        "envios_realizados": 0,
        "status": LabelState.PENDING.value,
        "etiquetas": [],
        "is_merged": True,
        "merged_transactions": transactions,
        "merged_product_names": member_products,
    }


def check_unmerge(merged: Any) -> None:
    if not getattr(merged, "is_merged", False):
        raise IllegalTransitionError(f"Pedido {merged.transaction_id} não é uma mesclagem")
    if (merged.envios_realizados or 0) > 0:
        raise IllegalTransitionError(
            "Mesclagem com etiqueta emitida não pode ser desfeita",
            current_state=merged.status,
        )


def restore_folded(order: Any) -> None:
    order.merged_into = None
    order.status = derive_state(order.envios_realizados or 0, order.envios_total).value


def tracking_rows(orders: Iterable[Any]) -> List[List[str]]:
    """One row per original transaction id; merged orders expand to their members."""
    rows: List[List[str]] = []
    for order in orders:
        codes = list(order.etiquetas or [])
        if not codes:
            continue
        purchase_date = safe_string(order.purchase_date).split(" ")[0]
        products = list(order.merged_product_names or []) if getattr(order, "is_merged", False) else []
        for idx, transaction_id in enumerate(original_transactions(order)):
            product = products[idx] if idx < len(products) else order.product_name
            rows.append([
                transaction_id,
                purchase_date,
                product,
                TRACKING_RESPONSIBLE,
                codes[-1],
                TRACKING_STATUS,
                TRACKING_LINK,
            ])
    return rows


def export_tracking_csv(orders: Iterable[Any]) -> str:
    """BOM-prefixed CSV in the checkout platform's tracking import layout."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(TRACKING_CSV_HEADER)
    for row in tracking_rows(orders):
        writer.writerow(row)
    return "\ufeff" + buffer.getvalue()


def destinatario_fields(order: Any) -> Dict[str, str]:
    return {
        "nome": order.name,
        "logradouro": order.address,
        "numero": order.number,
        "complemento": order.complement,
        "bairro": order.neighborhood,
        "cidade": order.city,
        "uf": order.state,
        "cep": order.zip,
        "telefone": order.phone,
        "email": order.email,
        "documento": order.tax_id,
    }
