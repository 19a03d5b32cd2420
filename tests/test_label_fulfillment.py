import csv
import io
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services import label_fulfillment as lf
from services.errors import IllegalTransitionError, MergeConfirmationRequired


def _order(tid="T1", email="ana@x.com", product="Livro Físico", total=1, done=0, status=None, **kw):
    fields = dict(
        id=f"id-{tid}",
        batch_id="B1",
        transaction_id=tid,
        email=email,
        name="Ana",
        phone="11999990000",
        tax_id="12345678900",
        product_name=product,
        purchase_date="2024-05-01 10:22:00",
        zip="01310100",
        address="Av. Paulista",
        number="1000",
        complement="",
        neighborhood="Bela Vista",
        city="São Paulo",
        state="SP",
        service_code=lf.DEFAULT_SERVICE_CODE,
        envios_total=total,
        envios_realizados=done,
        status=status or lf.derive_state(done, total).value,
        etiquetas=[f"AA{i}BR" for i in range(done)],
        last_error=None,
        is_merged=False,
        merged_transactions=None,
        merged_product_names=None,
        merged_into=None,
    )
    fields.update(kw)
    return SimpleNamespace(**fields)


def _assert_state_consistent(order):
    if order.status != lf.LabelState.ERROR.value:
        assert order.status == lf.derive_state(order.envios_realizados, order.envios_total).value
    assert 0 <= order.envios_realizados <= order.envios_total
    assert len(order.etiquetas) == order.envios_realizados


@pytest.mark.parametrize("name, expected", [("Livro Físico", True), ("KIT Boas Vindas", True), ("Curso online", False), ("", False)])
def test_physical_product_detection(name, expected):
    assert lf.is_physical_product(name) is expected


def test_issuing_walks_pending_partial_generated():
    order = _order()
    lf.set_planned_count(order, 3)

    assert lf.record_issued_label(order, "AA1BR") == 1
    assert order.status == "partial"
    _assert_state_consistent(order)

    lf.record_issued_label(order, "AA2BR")
    lf.record_issued_label(order, "AA3BR")
    assert order.status == "generated"
    assert order.etiquetas == ["AA1BR", "AA2BR", "AA3BR"]
    _assert_state_consistent(order)

    with pytest.raises(IllegalTransitionError):
        lf.record_issued_label(order, "AA4BR")


def test_error_keeps_counts_and_is_retryable():
    order = _order(total=2)

    lf.mark_error(order, "CEP inválido")
    assert order.status == "error"
    assert order.envios_realizados == 0
    assert lf.is_pending(order)

    lf.record_issued_label(order, "AA1BR")
    assert order.status == "partial"
    assert order.last_error is None


def test_generated_is_terminal():
    order = _order(total=1, done=1)

    with pytest.raises(IllegalTransitionError):
        lf.mark_error(order, "boom")
    with pytest.raises(IllegalTransitionError):
        lf.increment_planned_count(order)
    assert not lf.can_issue(order)


def test_planned_count_only_before_first_label():
    order = _order(total=2, done=1)

    with pytest.raises(IllegalTransitionError):
        lf.set_planned_count(order, 3)


@pytest.mark.parametrize("count", [0, 5, -1])
def test_planned_count_range(count):
    with pytest.raises(ValueError):
        lf.set_planned_count(_order(), count)


def test_increment_only_for_partial_orders():
    with pytest.raises(IllegalTransitionError):
        lf.increment_planned_count(_order())

    order = _order(total=2, done=1)
    lf.increment_planned_count(order)
    assert order.envios_total == 3
    assert order.status == "partial"


def test_merge_builds_single_pending_order():
    a = _order("T1", product="Livro Físico")
    b = _order("T2", product="Kit Canetas")

    merged = lf.build_merged_order([a, b])

    assert merged["transaction_id"] == "T1 + T2"
    assert merged["product_name"] == "Livro Físico + Kit Canetas"
    assert merged["merged_transactions"] == ["T1", "T2"]
    assert merged["merged_product_names"] == ["Livro Físico", "Kit Canetas"]
    assert merged["envios_total"] == 1
    assert merged["status"] == "pending"
    assert merged["is_merged"] is True


def test_merge_with_mixed_emails_requires_confirmation():
    a = _order("T1", email="ana@x.com")
    b = _order("T2", email="bia@x.com")

    with pytest.raises(MergeConfirmationRequired) as excinfo:
        lf.build_merged_order([a, b])
    assert excinfo.value.emails == ["ana@x.com", "bia@x.com"]

    assert lf.build_merged_order([a, b], confirm_mixed_emails=True)["email"] == "ana@x.com"


def test_merge_rejects_issued_or_folded_orders():
    with pytest.raises(IllegalTransitionError):
        lf.build_merged_order([_order("T1")])
    with pytest.raises(IllegalTransitionError):
        lf.build_merged_order([_order("T1"), _order("T2", total=2, done=1)])
    with pytest.raises(IllegalTransitionError):
        lf.build_merged_order([_order("T1"), _order("T2", merged_into="M1")])


def test_unmerge_refused_after_label():
    merged = _order("T1 + T2", is_merged=True, merged_transactions=["T1", "T2"], total=1, done=1)

    with pytest.raises(IllegalTransitionError):
        lf.check_unmerge(merged)
    with pytest.raises(IllegalTransitionError):
        lf.check_unmerge(_order("T3"))


def test_restore_folded_clears_link():
    order = _order("T1", merged_into="M1")

    lf.restore_folded(order)

    assert order.merged_into is None
    assert order.status == "pending"


def test_tracking_csv_expands_merged_orders():
    merged = _order(
        "T1 + T2",
        product="Livro Físico + Kit, Canetas",
        is_merged=True,
        merged_transactions=["T1", "T2"],
        merged_product_names=["Livro Físico", "Kit, Canetas"],
        done=1,
    )
    single = _order("T3", total=2, done=2)
    unsent = _order("T4")

    content = lf.export_tracking_csv([merged, single, unsent])

    assert content.startswith("\ufeff")
    rows = list(csv.reader(io.StringIO(content[1:])))
    assert rows[0] == list(lf.TRACKING_CSV_HEADER)
    assert [r[0] for r in rows[1:]] == ["T1", "T2", "T3"]
    assert rows[1][1] == "2024-05-01"
    assert rows[2][2] == "Kit, Canetas"
    assert rows[1][4] == rows[2][4] == "AA0BR"
    assert rows[3][4] == "AA1BR"
    assert '"Kit, Canetas"' in content
    assert '"Livro Físico"' not in content


def test_destinatario_fields():
    fields = lf.destinatario_fields(_order())

    assert fields["nome"] == "Ana"
    assert fields["cep"] == "01310100"
    assert fields["uf"] == "SP"
