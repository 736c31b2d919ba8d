"""
Concurrency tests against a file-backed SQLite database.

Each worker thread gets its own app context and therefore its own session,
the way concurrent requests would.
"""

import os
import tempfile
import threading
from decimal import Decimal

import pytest

from pos_engine import create_app
from pos_engine.errors import ConflictError, InsufficientStockError
from pos_engine.extensions import db
from pos_engine.models import Product, Sale, Supplier, Variant
from pos_engine.services import build_engine


@pytest.fixture
def file_app():
    tmpdir = tempfile.TemporaryDirectory()
    db_path = os.path.join(tmpdir.name, "concurrency.db")
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 15, 'check_same_thread': False}},
        'POS_LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.drop_all()
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    tmpdir.cleanup()


def _seed_variant(app, stock):
    with app.app_context():
        product = Product(name="Last One")
        db.session.add(product)
        db.session.flush()
        variant = Variant(product_id=product.id, name="Default", sku="LAST-1", price=Decimal("25.00"), stock_quantity=stock)
        db.session.add(variant)
        db.session.commit()
        return variant.id


def _run_concurrently(app, worker, count=2):
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def _target(idx):
        with app.app_context():
            try:
                barrier.wait()
                outcome = worker(idx)
            except Exception as exc:  # collected for assertions
                outcome = exc
            finally:
                db.session.remove()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_target, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_last_unit_sells_exactly_once(file_app):
    variant_id = _seed_variant(file_app, stock=1)

    def worker(idx):
        engine = build_engine()
        sale = engine.sales.create_sale([{'variant_id': variant_id, 'quantity': 1}], user_id=idx + 1)
        return sale.invoice_number

    results = _run_concurrently(file_app, worker)

    successes = [r for r in results if isinstance(r, str)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStockError)

    with file_app.app_context():
        assert db.session.get(Variant, variant_id).stock_quantity == 0
        assert db.session.query(Sale).count() == 1


def test_concurrent_sales_get_distinct_invoice_numbers(file_app):
    variant_id = _seed_variant(file_app, stock=50)

    def worker(idx):
        engine = build_engine()
        return engine.sales.create_sale([{'variant_id': variant_id, 'quantity': 1}], user_id=1).invoice_number

    results = _run_concurrently(file_app, worker, count=4)

    assert all(isinstance(r, str) for r in results), results
    assert sorted(results) == ["INV-001", "INV-002", "INV-003", "INV-004"]


def test_racing_purchase_order_cancels_conflict(file_app):
    variant_id = _seed_variant(file_app, stock=0)
    with file_app.app_context():
        supplier = Supplier(name="Racer Supply")
        db.session.add(supplier)
        db.session.commit()
        order = build_engine().purchasing.create_purchase_order(
            supplier.id, [{'variant_id': variant_id, 'quantity': 2, 'unit_cost': "1.00"}], user_id=1
        )
        order_id = order.id

    def worker(idx):
        engine = build_engine()
        if idx == 0:
            return engine.purchasing.cancel_purchase_order(order_id, user_id=1).status
        return engine.purchasing.receive_purchase_order(order_id, user_id=1).status

    results = _run_concurrently(file_app, worker)

    assert len([r for r in results if isinstance(r, str)]) == 1
    assert len([r for r in results if isinstance(r, ConflictError)]) == 1
