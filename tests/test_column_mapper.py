import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.column_mapper import (
    REQUIRED_IMPORT_FIELDS,
    REQUIRED_LABEL_FIELDS,
    auto_detect_mapping,
    merge_keywords,
    prune_missing_optional,
    unknown_keys,
    validate_mapping,
)


def test_auto_detect_binds_each_header_once():
    headers = ["Nome do Cliente", "E-mail", "Telefone", "CPF", "Produto", "Transação", "Valor", "Status", "CEP", "Cidade"]

    mapping = auto_detect_mapping(headers)

    assert mapping["email"] == "E-mail"
    assert mapping["name"] == "Nome do Cliente"
    assert mapping["phone"] == "Telefone"
    assert mapping["taxId"] == "CPF"
    assert mapping["product"] == "Produto"
    assert mapping["transactionId"] == "Transação"
    assert mapping["total"] == "Valor"
    assert mapping["status"] == "Status"
    assert mapping["zip"] == "CEP"
    assert mapping["city"] == "Cidade"
    assert len(set(mapping.values())) == len(mapping)


def test_auto_detect_leaves_unmatched_fields_out():
    mapping = auto_detect_mapping(["Email", "Foo"])

    assert mapping == {"email": "Email"}


def test_auto_detect_accepts_extended_keywords():
    headers = ["Email", "Comprador"]

    assert "name" not in auto_detect_mapping(headers)
    assert auto_detect_mapping(headers, merge_keywords({"name": ["comprador"]}))["name"] == "Comprador"


def test_merge_keywords_ignores_unknown_fields():
    table = merge_keywords({"nope": ["x"], "email": ["correio"]})

    assert "nope" not in table
    assert table["email"][-1] == "correio"


def test_validate_reports_missing_required_and_bad_optional():
    headers = ["Email", "Nome", "Status", "Transação"]
    mapping = {
        "email": "Email",
        "name": "Nome",
        "transactionId": "Transação",
        "status": "Status",
        "city": "Cidade",
    }

    result = validate_mapping(mapping, headers, REQUIRED_IMPORT_FIELDS)

    assert not result.valid
    assert result.missing_fields == ["statusFilter"]
    assert result.invalid_fields == ["city"]
    assert result.to_dict()["missingLabels"] == ["Filtrar Status (valor)", "Cidade"]


def test_validate_required_header_must_exist():
    mapping = {"transactionId": "Código", "name": "Nome", "zip": "CEP"}

    result = validate_mapping(mapping, ["Código", "Nome"], REQUIRED_LABEL_FIELDS)

    assert result.missing_fields == ["zip"]


def test_status_filter_is_a_value_not_a_header():
    headers = ["Email", "Nome", "Transação", "Status"]
    mapping = {
        "email": "Email",
        "name": "Nome",
        "transactionId": "Transação",
        "status": "Status",
        "statusFilter": "Aprovado",
    }

    assert validate_mapping(mapping, headers).valid


def test_prune_drops_only_absent_optional_columns():
    mapping = {"email": "Email", "city": "Cidade", "zip": "CEP", "statusFilter": "Paga"}

    pruned = prune_missing_optional(mapping, ["Email", "CEP"], REQUIRED_IMPORT_FIELDS)

    assert pruned == {"email": "Email", "zip": "CEP", "statusFilter": "Paga"}


def test_unknown_keys():
    assert unknown_keys({"email": "a", "foo": "b", "statusFilter": "c"}) == ["foo"]
