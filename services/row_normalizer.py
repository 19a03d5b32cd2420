"""
Raw mapped CSV row → canonical sale record, plus the paid-status filter.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

NAME_FALLBACK = "Sem nome"
COUNTRY = "Brasil"

_NON_DIGITS = re.compile(r"\D+")


@dataclass
class Address:
    zip: str
    address: str
    city: str = ""
    state: str = ""
    country: str = COUNTRY

    def to_payload(self) -> Dict[str, str]:
        return {
            "zip": self.zip,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }


@dataclass
class NormalizedSaleRow:
    email: str
    name: str
    transaction_id: str
    phone: str = ""
    tax_id: str = ""
    product_name: str = ""
    total_value: float = 0.0
    address: Optional[Address] = None
    raw: Dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class SkipReason:
    reason: str
    email: str = ""
    name: str = ""


def safe_string(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def safe_email(value: Any) -> Optional[str]:
    email = safe_string(value).lower()
    if not email or "@" not in email or "." not in email:
        return None
    return email


def digits_only(value: Any) -> str:
    return _NON_DIGITS.sub("", safe_string(value))


def normalize_phone(value: Any) -> str:
    text = safe_string(value)
    if text.startswith("+"):
        text = text[1:]
    return _NON_DIGITS.sub("", text)


def compose_address(street: str, number: str = "", complement: str = "", neighborhood: str = "") -> str:
    line = street
    if number:
        line += f", {number}"
    if complement:
        line += f" - {complement}"
    if neighborhood:
        line += f" - {neighborhood}"
    return line


def parse_total(value: Any) -> float:
    """
    Parse a money cell. Accepts "1234.56", "1234,56", "1.234,56", "R$ 99,90".
    Anything unreadable is 0.0.
    """
    text = safe_string(value).replace("R$", "").replace(" ", "").replace("\xa0", "")
    if not text:
        return 0.0
    if "," in text:
        if "." in text and text.rfind(".") > text.rfind(","):
            # 1,234.56
            text = text.replace(",", "")
        else:
            text = text.replace(".", "").replace(",", ".")
    try:
        result = float(text)
    except ValueError:
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def _cell(row: Mapping[str, Any], mapping: Mapping[str, str], key: str) -> str:
    header = mapping.get(key)
    if not header:
        return ""
    return safe_string(row.get(header))


def build_address(row: Mapping[str, Any], mapping: Mapping[str, str]) -> Optional[Address]:
    zip_code = digits_only(_cell(row, mapping, "zip"))
    if not zip_code:
        return None
    return Address(
        zip=zip_code,
        address=compose_address(
            _cell(row, mapping, "address"),
            _cell(row, mapping, "number"),
            _cell(row, mapping, "complement"),
            _cell(row, mapping, "neighborhood"),
        ),
        city=_cell(row, mapping, "city"),
        state=_cell(row, mapping, "state"),
    )


def normalize_row(row: Mapping[str, Any], mapping: Mapping[str, str]) -> Union[NormalizedSaleRow, SkipReason]:
    email = safe_email(_cell(row, mapping, "email"))
    name = _cell(row, mapping, "name") or NAME_FALLBACK
    transaction_id = _cell(row, mapping, "transactionId")

    if not email or not transaction_id:
        return SkipReason(
            reason="Sem email ou transactionId",
            email=email or _cell(row, mapping, "email"),
            name=name,
        )

    return NormalizedSaleRow(
        email=email,
        name=name,
        transaction_id=transaction_id,
        phone=normalize_phone(_cell(row, mapping, "phone")),
        tax_id=digits_only(_cell(row, mapping, "taxId")),
        product_name=_cell(row, mapping, "product"),
        total_value=parse_total(_cell(row, mapping, "total")),
        address=build_address(row, mapping),
        raw={str(k): safe_string(v) for k, v in row.items()},
    )


# ---- Status filter ----

@dataclass
class StatusFilterResult:
    rows: List[Dict[str, str]]
    filtered_out: int
    observed_statuses: List[str]

    def diagnostics(self, headers: Sequence[str]) -> Dict[str, Any]:
        return {
            "uniqueStatuses": self.observed_statuses[:10],
            "csvHeaders": list(headers)[:20],
            "filteredOut": self.filtered_out,
        }


def is_paid(row: Mapping[str, Any], mapping: Mapping[str, str]) -> bool:
    """Exact match of the status cell against the paid literal; no case folding."""
    paid_value = mapping.get("statusFilter") or ""
    if not paid_value:
        return False
    return _cell(row, mapping, "status") == paid_value


def filter_paid_rows(rows: Sequence[Mapping[str, Any]], mapping: Mapping[str, str]) -> StatusFilterResult:
    kept: List[Dict[str, str]] = []
    observed: List[str] = []
    seen: set[str] = set()

    for row in rows:
        status = _cell(row, mapping, "status")
        if status not in seen:
            seen.add(status)
            observed.append(status)
        if is_paid(row, mapping):
            kept.append(dict(row))

    result = StatusFilterResult(rows=kept, filtered_out=len(rows) - len(kept), observed_statuses=observed)
    logger.info(
        "Status filter kept %d of %d rows (paid=%r)", len(kept), len(rows), mapping.get("statusFilter")
    )
    return result
