from decimal import Decimal

import pytest

from pos_engine.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from pos_engine.models import PaymentMethod, Sale, SaleItem, StockFlow, Transaction
from pos_engine.models.sales import (
    FULFILLMENT_FULFILLED,
    SALE_STATUS_CANCELLED,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_PENDING,
    TXN_PAYMENT,
    TXN_REFUND,
)
from pos_engine.models.taxes import PRICING_INCLUSIVE, SCOPE_CATEGORY
from pos_engine.services import build_engine
from pos_engine.services.sales_service import allocate_discount


def _check_totals(sale):
    line_totals = sum((item.line_total for item in sale.items), Decimal("0"))
    line_taxes = sum((item.tax_amount for item in sale.items), Decimal("0"))
    assert line_totals == sale.subtotal
    assert line_taxes == sale.total_tax
    if sale.pricing_mode == PRICING_INCLUSIVE:
        assert sale.total_amount == line_totals - sale.discount_amount
    else:
        assert sale.total_amount == line_totals - sale.discount_amount + line_taxes
    assert sum((item.global_discount_share for item in sale.items), Decimal("0")) == sale.discount_amount


def test_exclusive_sale_adds_tax(engine, make_variant, make_profile):
    make_profile([{'rate_percent': 10}])
    variant = make_variant(price="100.00", stock=5)

    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 2}], user_id=1)

    assert sale.invoice_number == "INV-001"
    assert sale.items[0].tax_amount == Decimal("20.00")
    assert sale.total_tax == Decimal("20.00")
    assert sale.total_amount == Decimal("220.00")
    assert sale.status == SALE_STATUS_PENDING
    assert engine.inventory.get_stock(variant.id) == 3
    assert sale.items[0].tax_rule_snapshot[0]["amount"] == "20.00"
    _check_totals(sale)


def test_inclusive_sale_keeps_price(engine, make_variant, make_profile):
    make_profile([{'rate_percent': 10}], pricing_mode=PRICING_INCLUSIVE)
    variant = make_variant(price="100.00", stock=5)

    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 2}], user_id=1)

    assert sale.items[0].tax_amount == Decimal("18.18")
    assert sale.total_amount == Decimal("200.00")
    _check_totals(sale)


def test_full_payment_completes_sale(engine, cash, make_variant, make_profile):
    make_profile([{'rate_percent': 10}])
    variant = make_variant(price="100.00")

    sale = engine.sales.create_sale(
        [{'variant_id': variant.id, 'quantity': 2}],
        user_id=1,
        payments=[{'payment_method_id': cash.id, 'amount': "220.00"}],
    )

    assert sale.status == SALE_STATUS_COMPLETED
    assert sale.paid_amount == Decimal("220.00")
    assert [t.type for t in sale.transactions] == [TXN_PAYMENT]


@pytest.mark.parametrize("discount", [
    {'type': 'fixed', 'value': "10.00"},
    {'type': 'percentage', 'value': "12.5"},
    None,
])
def test_totals_hold_for_mixed_carts(engine, make_variant, make_profile, make_category, discount):
    food = make_category("food")
    make_profile([
        {'rate_percent': "8.25", 'priority': 1},
        {'rate_percent': 2, 'priority': 2, 'is_compound': True},
        {'rate_percent': 5, 'scope': SCOPE_CATEGORY, 'tax_category_id': food.id, 'priority': 3},
    ])
    a = make_variant(price="19.99", stock=20)
    b = make_variant(price="4.35", stock=20, tax_category=food)
    c = make_variant(price="0.99", stock=20)

    sale = engine.sales.create_sale(
        [
            {'variant_id': a.id, 'quantity': 3, 'discount_amount': "1.00"},
            {'variant_id': b.id, 'quantity': 7},
            {'variant_id': c.id, 'quantity': 1},
        ],
        user_id=1,
        discount=discount,
    )
    _check_totals(sale)


def test_percentage_discount_uses_post_line_discount_subtotal(engine, make_variant):
    variant = make_variant(price="50.00")

    sale = engine.sales.create_sale(
        [{'variant_id': variant.id, 'quantity': 2, 'discount_amount': "20.00"}],
        user_id=1,
        discount={'type': 'percentage', 'value': "10"},
    )

    assert sale.subtotal == Decimal("80.00")
    assert sale.discount_amount == Decimal("8.00")
    assert sale.total_amount == Decimal("72.00")


def test_discount_larger_than_subtotal_is_rejected(engine, db_session, make_variant):
    variant = make_variant(price="5.00", stock=3)

    with pytest.raises(ValidationError):
        engine.sales.create_sale(
            [{'variant_id': variant.id, 'quantity': 1}], user_id=1, discount={'type': 'fixed', 'value': "6.00"}
        )
    assert engine.inventory.get_stock(variant.id) == 3
    assert db_session.query(Sale).count() == 0


@pytest.mark.parametrize("line, discount", [
    ({'quantity': 1, 'discount_amount': "5.01"}, None),
    ({'quantity': 1}, {'type': 'fixed', 'value': "5.01"}),
    ({'quantity': 1}, {'type': 'percentage', 'value': "101"}),
])
def test_discount_checks_run_before_stock_is_reserved(engine, monkeypatch, make_variant, line, discount):
    variant = make_variant(price="5.00", stock=3)
    reserved = []
    monkeypatch.setattr(engine.inventory, "reserve_lines", lambda *a, **kw: reserved.append(a))

    with pytest.raises(ValidationError):
        engine.sales.create_sale([{'variant_id': variant.id, **line}], user_id=1, discount=discount)

    assert reserved == []
    assert engine.inventory.get_stock(variant.id) == 3


def test_allocate_discount_sums_exactly():
    shares = allocate_discount([Decimal("10.00"), Decimal("10.00"), Decimal("10.00")], Decimal("10.00"))
    assert shares == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]
    assert allocate_discount([Decimal("60"), Decimal("40")], Decimal("10")) == [Decimal("6.00"), Decimal("4.00")]


def test_insufficient_stock_leaves_no_trace(engine, db_session, make_variant):
    plenty = make_variant(stock=10)
    scarce = make_variant(stock=1)

    with pytest.raises(InsufficientStockError):
        engine.sales.create_sale(
            [{'variant_id': plenty.id, 'quantity': 2}, {'variant_id': scarce.id, 'quantity': 2}],
            user_id=1,
        )

    assert engine.inventory.get_stock(plenty.id) == 10
    assert engine.inventory.get_stock(scarce.id) == 1
    assert db_session.query(Sale).count() == 0
    assert db_session.query(SaleItem).count() == 0
    assert db_session.query(StockFlow).count() == 0


def test_invalid_payment_method_rolls_back_everything(engine, db_session, make_variant):
    variant = make_variant(stock=4)
    retired = PaymentMethod(name="Cheque", is_active=False)
    db_session.add(retired)
    db_session.commit()

    with pytest.raises(NotFoundError):
        engine.sales.create_sale(
            [{'variant_id': variant.id, 'quantity': 1}],
            user_id=1,
            payments=[{'payment_method_id': 31337, 'amount': "1.00"}],
        )
    with pytest.raises(ValidationError):
        engine.sales.create_sale(
            [{'variant_id': variant.id, 'quantity': 1}],
            user_id=1,
            payments=[{'payment_method_id': retired.id, 'amount': "1.00"}],
        )

    assert engine.inventory.get_stock(variant.id) == 4
    assert db_session.query(Sale).count() == 0
    assert db_session.query(Transaction).count() == 0

    # Failed attempts did not consume invoice numbers
    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)
    assert sale.invoice_number == "INV-001"


@pytest.mark.parametrize("items", [
    [],
    [{'variant_id': 1, 'quantity': 0}],
    [{'variant_id': 1, 'quantity': "1.5"}],
    [{'variant_id': None, 'quantity': 1}],
])
def test_malformed_lines_are_rejected(engine, items):
    with pytest.raises(ValidationError):
        engine.sales.create_sale(items, user_id=1)


def test_unknown_variant_or_customer_is_not_found(engine, make_variant):
    variant = make_variant()
    with pytest.raises(NotFoundError):
        engine.sales.create_sale([{'variant_id': 999999, 'quantity': 1}], user_id=1)
    with pytest.raises(NotFoundError):
        engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1, customer_id=999999)


def test_actor_is_required(engine, make_variant):
    variant = make_variant()
    with pytest.raises(ValidationError):
        engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=None)


def test_customer_type_and_exemption_drive_tax(engine, make_variant, make_profile, make_customer):
    make_profile([{'rate_percent': 10}, {'rate_percent': 5, 'customer_type': "wholesale"}])
    variant = make_variant(price="100.00")
    wholesale = make_customer("Acme", customer_type="wholesale")
    charity = make_customer("Shelter", is_tax_exempt=True)

    retail_sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)
    wholesale_sale = engine.sales.create_sale(
        [{'variant_id': variant.id, 'quantity': 1}], user_id=1, customer_id=wholesale.id
    )
    exempt_sale = engine.sales.create_sale(
        [{'variant_id': variant.id, 'quantity': 1}], user_id=1, customer_id=charity.id
    )

    assert retail_sale.total_tax == Decimal("10.00")
    assert wholesale_sale.total_tax == Decimal("15.00")
    assert exempt_sale.total_tax == Decimal("0.00")


def test_tax_mode_none_skips_tax(engine, make_variant, make_profile):
    make_profile([{'rate_percent': 10}])
    variant = make_variant(price="100.00")

    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1, tax_mode="none")

    assert sale.total_tax == Decimal("0.00")
    assert sale.total_amount == Decimal("100.00")
    assert sale.pricing_mode is None


def test_cancel_restores_stock_and_refunds(engine, db_session, cash, make_variant, audit_events):
    a = make_variant(stock=5)
    b = make_variant(stock=7)
    sale = engine.sales.create_sale(
        [{'variant_id': a.id, 'quantity': 2}, {'variant_id': b.id, 'quantity': 3}],
        user_id=1,
        payments=[{'payment_method_id': cash.id, 'amount': "50.00"}],
    )

    cancelled = engine.sales.cancel_sale(sale.id, user_id=2)

    assert cancelled.status == SALE_STATUS_CANCELLED
    assert cancelled.cancelled_by_user_id == 2
    assert cancelled.paid_amount == Decimal("0")
    assert engine.inventory.get_stock(a.id) == 5
    assert engine.inventory.get_stock(b.id) == 7
    refunds = [t for t in cancelled.transactions if t.type == TXN_REFUND]
    assert [r.amount for r in refunds] == [Decimal("-50.00")]
    assert [e.action for e in audit_events] == ["sale.create", "sale.cancel"]

    with pytest.raises(ConflictError):
        engine.sales.cancel_sale(sale.id, user_id=2)
    assert engine.inventory.get_stock(a.id) == 5


def test_cancel_unknown_sale_is_not_found(engine):
    with pytest.raises(NotFoundError):
        engine.sales.cancel_sale(123456, user_id=1)


def test_add_payment_completes_pending_sale(engine, cash, make_variant):
    variant = make_variant(price="30.00")
    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)
    assert sale.status == SALE_STATUS_PENDING

    engine.sales.add_payment(sale.id, "10.00", cash.id, user_id=1)
    assert engine.sales.get_sale(sale.id).status == SALE_STATUS_PENDING

    txn = engine.sales.add_payment(sale.id, "20.00", cash.id, user_id=1)
    sale = engine.sales.get_sale(sale.id)
    assert txn.amount == Decimal("20.00")
    assert sale.paid_amount == Decimal("30.00")
    assert sale.status == SALE_STATUS_COMPLETED

    for bad in ("0", "-5"):
        with pytest.raises(ValidationError):
            engine.sales.add_payment(sale.id, bad, cash.id, user_id=1)


def test_payment_on_cancelled_sale_conflicts(engine, cash, make_variant):
    variant = make_variant()
    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)
    engine.sales.cancel_sale(sale.id, user_id=1)

    with pytest.raises(ConflictError):
        engine.sales.add_payment(sale.id, "5.00", cash.id, user_id=1)


def test_fulfillment_transitions(engine, make_variant):
    variant = make_variant(stock=5)
    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)

    fulfilled = engine.sales.fulfill_sale(sale.id, user_id=1)
    assert fulfilled.fulfillment_status == FULFILLMENT_FULFILLED
    assert fulfilled.fulfilled_at is not None
    with pytest.raises(ConflictError):
        engine.sales.fulfill_sale(sale.id, user_id=1)

    other = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)
    engine.sales.cancel_sale(other.id, user_id=1)
    with pytest.raises(ConflictError):
        engine.sales.fulfill_sale(other.id, user_id=1)


def test_failing_audit_sink_does_not_undo_sale(db_session, make_variant):
    def broken_sink(event):
        raise RuntimeError("audit store offline")

    engine = build_engine(db_session, audit_sink=broken_sink, config={})
    variant = make_variant(stock=2)

    sale = engine.sales.create_sale([{'variant_id': variant.id, 'quantity': 1}], user_id=1)

    assert db_session.get(Sale, sale.id) is not None
    assert engine.inventory.get_stock(variant.id) == 1
