from datetime import date
from decimal import Decimal

import pytest

from pos_engine.errors import InsufficientStockError, NotFoundError, ValidationError
from pos_engine.models import StockFlow, StockLot, Variant
from pos_engine.models.inventory import FLOW_ADJUSTMENT, FLOW_PURCHASE, FLOW_RETURN, FLOW_SALE
from pos_engine.services.inventory_service import StockRequest


def test_reserve_decrements_and_records_flow(engine, db_session, make_variant):
    variant = make_variant(stock=5)

    flow = engine.inventory.reserve_stock(variant.id, 2, user_id=1)
    db_session.commit()

    assert engine.inventory.get_stock(variant.id) == 3
    assert flow.event_type == FLOW_SALE
    assert flow.quantity == -2
    assert flow.balance_after == 3


def test_reserve_more_than_on_hand_fails_without_change(engine, db_session, make_variant):
    variant = make_variant(stock=1)

    with pytest.raises(InsufficientStockError) as exc_info:
        engine.inventory.reserve_stock(variant.id, 2)
    db_session.rollback()

    assert exc_info.value.details["items"][0]["available"] == 1
    assert engine.inventory.get_stock(variant.id) == 1
    assert db_session.query(StockFlow).count() == 0


def test_reserve_lines_checks_aggregate_before_any_decrement(engine, db_session, make_variant):
    plenty = make_variant(stock=10)
    scarce = make_variant(stock=3)

    requests = [
        StockRequest(plenty.id, 4),
        StockRequest(scarce.id, 2),
        StockRequest(scarce.id, 2),  # same variant twice: 4 > 3
    ]
    with pytest.raises(InsufficientStockError) as exc_info:
        engine.inventory.reserve_lines(requests)
    db_session.rollback()

    assert [i["variant_id"] for i in exc_info.value.details["items"]] == [scarce.id]
    assert engine.inventory.get_stock(plenty.id) == 10
    assert engine.inventory.get_stock(scarce.id) == 3
    assert db_session.query(StockFlow).count() == 0


def test_reserve_unknown_variant_is_not_found(engine):
    with pytest.raises(NotFoundError):
        engine.inventory.reserve_lines([StockRequest(424242, 1)])


def test_restore_adds_back(engine, db_session, make_variant):
    variant = make_variant(stock=0)

    flow = engine.inventory.restore_stock(variant.id, 3, FLOW_RETURN, reference_type="return_item", reference_id=9)
    db_session.commit()

    assert engine.inventory.get_stock(variant.id) == 3
    assert (flow.quantity, flow.reference_type, flow.reference_id) == (3, "return_item", 9)

    with pytest.raises(NotFoundError):
        engine.inventory.restore_stock(999999, 1, FLOW_RETURN)


def test_receive_creates_lot_linked_to_flow(engine, db_session, make_variant):
    variant = make_variant(stock=2)

    lot = engine.inventory.receive_stock(
        variant.id, 5, "3.25", lot_number="L-100", expiry_date=date(2027, 1, 31)
    )
    db_session.commit()

    assert engine.inventory.get_stock(variant.id) == 7
    stored = db_session.get(StockLot, lot.id)
    assert stored.unit_cost == Decimal("3.25")
    assert stored.expiry_date == date(2027, 1, 31)

    flow = engine.inventory.list_flows(variant.id)[0]
    assert (flow.event_type, flow.quantity, flow.lot_id) == (FLOW_PURCHASE, 5, lot.id)


def test_adjust_stock_commits_and_never_goes_negative(engine, db_session, make_variant):
    variant = make_variant(stock=4)

    flow = engine.inventory.adjust_stock(variant.id, -3, user_id=1, note="Damaged")
    assert flow.event_type == FLOW_ADJUSTMENT
    assert flow.balance_after == 1

    with pytest.raises(InsufficientStockError):
        engine.inventory.adjust_stock(variant.id, -2, user_id=1)
    with pytest.raises(ValidationError):
        engine.inventory.adjust_stock(variant.id, 0, user_id=1)
    with pytest.raises(ValidationError):
        engine.inventory.adjust_stock(variant.id, 1, user_id=None)

    db_session.expire_all()
    assert db_session.get(Variant, variant.id).stock_quantity == 1
    assert len(engine.inventory.list_flows(variant.id)) == 1
