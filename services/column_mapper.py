"""
Column mapping: logical sale fields → CSV header names.

A mapping is a plain dict keyed by the field names below. Header fields hold a
CSV header; ``statusFilter`` holds the literal status value of a paid sale.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

ColumnMapping = Dict[str, str]

# Priority order used by auto-detection
HEADER_FIELDS: Tuple[str, ...] = (
    "email",
    "name",
    "phone",
    "taxId",
    "product",
    "transactionId",
    "total",
    "status",
    "zip",
    "address",
    "number",
    "complement",
    "neighborhood",
    "city",
    "state",
    "saleDate",
)
VALUE_FIELDS: Tuple[str, ...] = ("statusFilter",)
MAPPING_FIELDS: Tuple[str, ...] = HEADER_FIELDS + VALUE_FIELDS

REQUIRED_IMPORT_FIELDS: Tuple[str, ...] = ("email", "name", "transactionId", "status", "statusFilter")
REQUIRED_LABEL_FIELDS: Tuple[str, ...] = ("transactionId", "name", "zip")

FIELD_LABELS: Dict[str, str] = {
    "email": "Email",
    "name": "Nome",
    "phone": "Telefone",
    "taxId": "CPF/CNPJ",
    "product": "Produto",
    "transactionId": "ID Transação",
    "total": "Valor Total",
    "status": "Status",
    "statusFilter": "Filtrar Status (valor)",
    "zip": "CEP",
    "address": "Rua",
    "number": "Número",
    "complement": "Complemento",
    "neighborhood": "Bairro",
    "city": "Cidade",
    "state": "Estado",
    "saleDate": "Data da compra",
}

# Lowercase synonyms per field (Portuguese and English exports). Callers may
# pass an extended table to auto_detect_mapping.
DEFAULT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "email": ("email", "e-mail", "e_mail", "mail"),
    "name": ("nome", "name", "cliente", "customer", "nome do cliente", "nome completo"),
    "phone": ("telefone", "phone", "fone", "celular", "mobile", "tel"),
    "taxId": ("cpf", "cnpj", "documento", "document", "cpf/cnpj", "tax"),
    "product": ("produto", "product", "nome do produto", "item"),
    "transactionId": ("transação", "transacao", "transaction", "fatura", "invoice", "pedido", "order id", "id da", "código da compra"),
    "total": ("total", "valor", "value", "price", "preço", "preco", "amount"),
    "status": ("status", "situação", "situacao"),
    "zip": ("cep", "zip", "codigo postal", "postal"),
    "address": ("rua", "endereço", "endereco", "address", "logradouro", "street"),
    "number": ("número", "numero", "number", "nº", "num"),
    "complement": ("complemento", "complement"),
    "neighborhood": ("bairro", "neighborhood", "district"),
    "city": ("cidade", "city", "municipio", "município"),
    "state": ("estado", "state", "uf"),
    "saleDate": ("data da transação", "data da compra", "data", "date"),
}


@dataclass
class MappingValidation:
    valid: bool
    missing_fields: List[str] = field(default_factory=list)
    # optional fields pointing at a header the CSV does not have
    invalid_fields: List[str] = field(default_factory=list)

    @property
    def missing_labels(self) -> List[str]:
        return [FIELD_LABELS.get(key, key) for key in self.missing_fields + self.invalid_fields]

    def to_dict(self) -> Dict[str, object]:
        return {
            "valid": self.valid,
            "missingFields": list(self.missing_fields),
            "invalidFields": list(self.invalid_fields),
            "missingLabels": self.missing_labels,
        }


def merge_keywords(extra: Optional[Mapping[str, Iterable[str]]] = None) -> Dict[str, Tuple[str, ...]]:
    """Extend the default synonym table; extra keywords are tried after the defaults."""
    table = dict(DEFAULT_KEYWORDS)
    for key, words in (extra or {}).items():
        if key not in HEADER_FIELDS:
            logger.warning("Ignoring keywords for unknown mapping field %r", key)
            continue
        merged = list(table.get(key, ()))
        merged.extend(w.lower() for w in words if w and w.lower() not in merged)
        table[key] = tuple(merged)
    return table


def auto_detect_mapping(
    headers: Sequence[str],
    keywords: Optional[Mapping[str, Sequence[str]]] = None,
) -> ColumnMapping:
    """
    Guess a mapping from header names.

    Fields are visited in HEADER_FIELDS order; for each one the headers are
    scanned in file order and the first header not yet bound whose lowercase
    text contains any keyword is taken.
    """
    table = keywords or DEFAULT_KEYWORDS
    mapping: ColumnMapping = {}
    bound: set[str] = set()

    for key in HEADER_FIELDS:
        words = table.get(key) or ()
        for header in headers:
            if header in bound:
                continue
            lowered = header.lower()
            if any(word in lowered for word in words):
                mapping[key] = header
                bound.add(header)
                break

    logger.debug("Auto-detected mapping for %d headers: %s", len(headers), mapping)
    return mapping


def validate_mapping(
    mapping: Mapping[str, Optional[str]],
    headers: Iterable[str],
    required: Sequence[str] = REQUIRED_IMPORT_FIELDS,
) -> MappingValidation:
    header_set = set(headers)
    missing: List[str] = []
    invalid: List[str] = []

    for key in required:
        value = (mapping.get(key) or "").strip()
        if not value:
            missing.append(key)
        elif key in HEADER_FIELDS and value not in header_set:
            missing.append(key)

    for key, value in mapping.items():
        if key in required or key not in HEADER_FIELDS:
            continue
        value = (value or "").strip()
        if value and value not in header_set:
            invalid.append(key)

    return MappingValidation(valid=not missing and not invalid, missing_fields=missing, invalid_fields=invalid)


def unknown_keys(mapping: Mapping[str, object]) -> List[str]:
    return [key for key in mapping if key not in MAPPING_FIELDS]


def prune_missing_optional(mapping: Mapping[str, str], headers: Iterable[str], required: Sequence[str]) -> ColumnMapping:
    """Drop optional header fields the file does not carry (platform exports vary by account)."""
    header_set = set(headers)
    pruned: ColumnMapping = {}
    for key, value in mapping.items():
        if key in HEADER_FIELDS and key not in required and value not in header_set:
            logger.info("Optional column %r (%s) not present in CSV; ignoring", value, key)
            continue
        pruned[key] = value
    return pruned
