"""
Checkout platform configurations.

Each supported platform exports sales with its own header names and its own
literal for a paid sale; the CRM stage a new deal lands in is fixed per
platform. A user-defined mapping is the CUSTOM variant and carries its own
stage id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional

from services.errors import ImportValidationError

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    HUBLA = "hubla"
    HOTMART = "hotmart"
    EDUZZ = "eduzz"
    KIWIFY = "kiwify"
    WOO = "woo"
    CUSTOM = "custom"


@dataclass(frozen=True)
class PlatformConfig:
    platform: Platform
    stage_id: str
    columns: Dict[str, str]
    paid_value: str

    def mapping(self) -> Dict[str, str]:
        return {**self.columns, "statusFilter": self.paid_value}


PLATFORM_CONFIGS: Dict[Platform, PlatformConfig] = {
    Platform.HUBLA: PlatformConfig(
        platform=Platform.HUBLA,
        stage_id="74022307-988f-4a81-a3df-c14b28bd41d9",
        paid_value="Paga",
        columns={
            "email": "Email do cliente",
            "name": "Nome do cliente",
            "phone": "Telefone do cliente",
            "taxId": "Documento do cliente",
            "product": "Nome do produto",
            "transactionId": "ID da fatura",
            "total": "Valor total",
            "status": "Status da fatura",
            "zip": "Endereço CEP",
            "address": "Endereço Rua",
            "city": "Endereço Cidade",
            "state": "Endereço Estado",
        },
    ),
    Platform.HOTMART: PlatformConfig(
        platform=Platform.HOTMART,
        stage_id="0c2bf45f-1c4b-4730-b02c-286b7c018f29",
        paid_value="Aprovado",
        columns={
            "email": "Email",
            "name": "Nome",
            "phone": "Telefone Final",
            "taxId": "Documento",
            "product": "Nome do Produto",
            "transactionId": "Transação",
            "total": "Preço Total",
            "status": "Status",
            "zip": "CEP",
            "address": "Endereço",
            "number": "Número",
            "complement": "Complemento",
            "neighborhood": "Bairro",
            "city": "Cidade",
            "state": "Estado",
        },
    ),
    Platform.EDUZZ: PlatformConfig(
        platform=Platform.EDUZZ,
        stage_id="3bbc9611-aa0d-47d5-a755-a9cdcfc453ef",
        paid_value="Paga",
        columns={
            "email": "Cliente / E-mail",
            "name": "Cliente / Nome",
            "phone": "Cliente / Fones",
            "taxId": "Cliente / Documento",
            "product": "Produto",
            "transactionId": "Fatura",
            "total": "Valor da Venda",
            "status": "Status",
            "zip": "CEP",
            "address": "Endereço",
            "number": "Numero",
            "complement": "Complemento",
            "neighborhood": "Bairro",
            "city": "Cidade",
            "state": "UF",
        },
    ),
    Platform.KIWIFY: PlatformConfig(
        platform=Platform.KIWIFY,
        stage_id="491a2794-7576-45d0-8d8e-d5a6855f17e2",
        paid_value="paid",
        columns={
            "email": "Email",
            "name": "Cliente",
            "phone": "Celular",
            "taxId": "CPF / CNPJ",
            "product": "Produto",
            "transactionId": "ID da venda",
            "total": "Valor líquido",
            "status": "Status",
            "zip": "CEP",
            "address": "Endereço",
            "number": "Numero",
            "complement": "Complemento",
            "neighborhood": "Bairro",
            "city": "Cidade",
            "state": "Estado",
        },
    ),
    Platform.WOO: PlatformConfig(
        platform=Platform.WOO,
        stage_id="2c16fbba-092d-48a8-929b-55c5b9d638cc",
        paid_value="wc-completed",
        columns={
            "email": "Billing Email Address",
            "name": "Billing First Name",
            "phone": "Billing Phone",
            "taxId": "_billing_cpf",
            "product": "Product Name #1",
            "transactionId": "Order ID",
            "total": "Order Total",
            "status": "Order Status",
            "zip": "Billing Postcode",
            "address": "Billing Address 1",
            "complement": "Billing Address 2",
            "neighborhood": "_billing_neighborhood",
            "city": "Billing City",
            "state": "Billing State",
        },
    ),
}


@dataclass(frozen=True)
class ImportSource:
    """Where an import's mapping, paid sentinel and CRM stage come from."""

    platform: Platform
    mapping: Dict[str, str] = field(default_factory=dict)
    stage_id: str = ""
    label: str = ""

    @property
    def paid_value(self) -> str:
        return self.mapping.get("statusFilter", "")

    @property
    def source_label(self) -> str:
        return self.label or f"CSV {self.platform.value.capitalize()}"

    def with_mapping(self, mapping: Mapping[str, str]) -> "ImportSource":
        return ImportSource(platform=self.platform, mapping=dict(mapping), stage_id=self.stage_id, label=self.label)

    @classmethod
    def for_platform(cls, platform: Platform) -> "ImportSource":
        config = PLATFORM_CONFIGS.get(platform)
        if config is None:
            raise ImportValidationError(f"Plataforma não suportada: {platform.value}")
        return cls(platform=platform, mapping=config.mapping(), stage_id=config.stage_id)

    @classmethod
    def custom(cls, mapping: Mapping[str, str], stage_id: str, label: str = "") -> "ImportSource":
        cleaned = {key: str(value).strip() for key, value in mapping.items() if value is not None and str(value).strip()}
        return cls(platform=Platform.CUSTOM, mapping=cleaned, stage_id=stage_id.strip(), label=label)


def parse_platform(value: Optional[str]) -> Optional[Platform]:
    """Accepts the lowercase platform ids plus 'woocommerce' as an alias of 'woo'."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text == "woocommerce":
        text = "woo"
    try:
        return Platform(text)
    except ValueError:
        raise ImportValidationError(f"Plataforma não suportada: {value}")


def resolve_import_source(
    platform: Optional[str] = None,
    custom_mapping: Optional[Mapping[str, str]] = None,
    stage_id: Optional[str] = None,
) -> ImportSource:
    """Custom mapping + stage id wins over a platform id; one of the two is required."""
    if custom_mapping and stage_id and stage_id.strip():
        return ImportSource.custom(custom_mapping, stage_id)
    if custom_mapping and not (stage_id and stage_id.strip()):
        raise ImportValidationError("stageId é obrigatório para mapeamento customizado")

    parsed = parse_platform(platform)
    if parsed is None or parsed is Platform.CUSTOM:
        raise ImportValidationError("Plataforma ou mapeamento customizado é obrigatório")
    return ImportSource.for_platform(parsed)
