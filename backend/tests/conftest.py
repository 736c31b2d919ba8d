"""
Pytest fixtures for POS engine tests.

Provides an in-memory application, a clean database per test, a wired
engine with a recording audit sink, and small catalog/tax factories.
"""

from decimal import Decimal

import pytest

from pos_engine import create_app
from pos_engine.extensions import db
from pos_engine.models import (
    Customer,
    PaymentMethod,
    Product,
    Supplier,
    TaxCategory,
    TaxProfile,
    TaxRule,
    Variant,
)
from pos_engine.models.taxes import PRICING_EXCLUSIVE, SCOPE_GLOBAL
from pos_engine.services import build_engine


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'POS_LOG_LEVEL': 'WARNING',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def audit_events():
    return []


@pytest.fixture(scope='function')
def engine(db_session, audit_events):
    return build_engine(
        db_session,
        audit_sink=audit_events.append,
        config={'POS_INVOICE_PREFIX': 'INV', 'POS_INVOICE_PAD': 3, 'POS_RETRY_ATTEMPTS': 3},
    )


@pytest.fixture(scope='function')
def cash(db_session):
    method = PaymentMethod(name="Cash", is_active=True)
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Northwind Wholesale")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_category(db_session):
    def _make(name="standard"):
        category = TaxCategory(name=name)
        db_session.add(category)
        db_session.commit()
        return category
    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    """Create a product with one variant. Returns the variant."""
    counter = {'n': 0}

    def _make(price="100.00", stock=10, *, cost="40.00", tax_category=None, name=None):
        counter['n'] += 1
        product = Product(
            name=name or f"Product {counter['n']}",
            tax_category_id=tax_category.id if tax_category is not None else None,
        )
        db_session.add(product)
        db_session.flush()
        variant = Variant(
            product_id=product.id,
            name="Default",
            sku=f"SKU-{counter['n']:04d}",
            price=Decimal(price),
            cost_price=Decimal(cost),
            stock_quantity=stock,
        )
        db_session.add(variant)
        db_session.commit()
        return variant
    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    def _make(name="Walk-in", customer_type=None, is_tax_exempt=False):
        customer = Customer(name=name, customer_type=customer_type, is_tax_exempt=is_tax_exempt)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def make_profile(db_session):
    """
    Create an active tax profile with rules.

    Each rule is a dict of TaxRule columns; scope defaults to GLOBAL.
    """
    def _make(rules=(), pricing_mode=PRICING_EXCLUSIVE, is_active=True, name="Default"):
        profile = TaxProfile(name=name, pricing_mode=pricing_mode, is_active=is_active)
        db_session.add(profile)
        db_session.flush()
        for spec in rules:
            values = {'scope': SCOPE_GLOBAL, 'priority': 0, 'is_compound': False}
            values.update(spec)
            values['rate_percent'] = Decimal(str(values['rate_percent']))
            db_session.add(TaxRule(tax_profile_id=profile.id, **values))
        db_session.commit()
        return profile
    return _make
