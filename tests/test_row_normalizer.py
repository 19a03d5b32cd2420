import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.errors import ImportValidationError
from services.platforms import ImportSource, Platform, parse_platform, resolve_import_source
from services.row_normalizer import (
    NAME_FALLBACK,
    NormalizedSaleRow,
    SkipReason,
    filter_paid_rows,
    normalize_phone,
    normalize_row,
    parse_total,
)

MAPPING = {
    "email": "Email",
    "name": "Nome",
    "phone": "Telefone",
    "taxId": "CPF",
    "product": "Produto",
    "transactionId": "Transação",
    "total": "Valor",
    "status": "Status",
    "statusFilter": "Aprovado",
    "zip": "CEP",
    "address": "Rua",
    "number": "Número",
    "complement": "Complemento",
    "neighborhood": "Bairro",
    "city": "Cidade",
    "state": "UF",
}


def _row(**overrides):
    row = {
        "Email": " Ana@Example.COM ",
        "Nome": "Ana Silva",
        "Telefone": "+55 (11) 98888-7777",
        "CPF": "123.456.789-00",
        "Produto": "Livro Físico",
        "Transação": "HP123",
        "Valor": "R$ 1.234,56",
        "Status": "Aprovado",
        "CEP": "01310-100",
        "Rua": "Av. Paulista",
        "Número": "1000",
        "Complemento": "Apto 5",
        "Bairro": "Bela Vista",
        "Cidade": "São Paulo",
        "UF": "SP",
    }
    row.update(overrides)
    return row


def test_normalize_full_row():
    sale = normalize_row(_row(), MAPPING)

    assert isinstance(sale, NormalizedSaleRow)
    assert sale.email == "ana@example.com"
    assert sale.phone == "5511988887777"
    assert sale.tax_id == "12345678900"
    assert sale.total_value == pytest.approx(1234.56)
    assert sale.address.zip == "01310100"
    assert sale.address.address == "Av. Paulista, 1000 - Apto 5 - Bela Vista"
    assert sale.address.to_payload()["country"] == "Brasil"


def test_normalizing_normalized_values_changes_nothing():
    first = normalize_row(_row(), MAPPING)

    again = normalize_row(
        _row(
            Email=first.email,
            Telefone=first.phone,
            CPF=first.tax_id,
            Valor=str(first.total_value),
            CEP=first.address.zip,
            Rua=first.address.address,
            Número="",
            Complemento="",
            Bairro="",
        ),
        MAPPING,
    )

    assert again.email == first.email
    assert again.phone == first.phone
    assert again.tax_id == first.tax_id
    assert again.total_value == first.total_value
    assert again.address == first.address
    assert again.name == first.name
    assert again.transaction_id == first.transaction_id


def test_missing_name_falls_back():
    sale = normalize_row(_row(Nome=""), MAPPING)

    assert sale.name == NAME_FALLBACK


def test_no_address_without_zip():
    sale = normalize_row(_row(CEP="—"), MAPPING)

    assert sale.address is None


@pytest.mark.parametrize("email, tid", [("", "HP1"), ("not-an-email", "HP1"), ("a@b.com", "")])
def test_rows_without_email_or_transaction_are_skipped(email, tid):
    result = normalize_row(_row(Email=email, **{"Transação": tid}), MAPPING)

    assert isinstance(result, SkipReason)
    assert result.reason == "Sem email ou transactionId"


@pytest.mark.parametrize(
    "raw, expected",
    [("99.90", 99.9), ("99,90", 99.9), ("1.234,56", 1234.56), ("1,234.56", 1234.56), ("R$ 10", 10.0), ("abc", 0.0), ("", 0.0)],
)
def test_parse_total(raw, expected):
    assert parse_total(raw) == pytest.approx(expected)


def test_normalize_phone_keeps_digits_only():
    assert normalize_phone("+55 11 9999-0000") == "551199990000"


def test_paid_filter_is_exact_and_reports_statuses():
    rows = [_row(Status="Aprovado"), _row(Status="aprovado"), _row(Status="Cancelado"), _row(Status="Aprovado")]

    result = filter_paid_rows(rows, MAPPING)

    assert len(result.rows) == 2
    assert result.filtered_out == 2
    assert result.observed_statuses == ["Aprovado", "aprovado", "Cancelado"]
    assert result.diagnostics(["Email"])["uniqueStatuses"] == ["Aprovado", "aprovado", "Cancelado"]


def test_platform_sources():
    hotmart = resolve_import_source("hotmart")
    assert hotmart.platform is Platform.HOTMART
    assert hotmart.paid_value == "Aprovado"
    assert hotmart.source_label == "CSV Hotmart"
    assert parse_platform("WooCommerce") is Platform.WOO


def test_custom_source_needs_stage_id():
    with pytest.raises(ImportValidationError):
        resolve_import_source(None, {"email": "Email"}, "")

    source = resolve_import_source("hotmart", {"email": " Email ", "city": ""}, "stage-1")
    assert source.platform is Platform.CUSTOM
    assert source.mapping == {"email": "Email"}
    assert source.stage_id == "stage-1"


def test_unknown_platform_rejected():
    with pytest.raises(ImportValidationError):
        resolve_import_source("shopify")
    with pytest.raises(ImportValidationError):
        resolve_import_source(None)


def test_custom_label_overrides_default():
    source = ImportSource.custom({"email": "Email"}, "s", label="CSV Loja")

    assert source.source_label == "CSV Loja"
    assert source.with_mapping({"email": "E"}).label == "CSV Loja"
