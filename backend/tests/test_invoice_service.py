from pos_engine.models import InvoiceSequence, Sale
from pos_engine.services.invoice_service import InvoiceNumberer


def test_format_and_parse(db_session):
    numberer = InvoiceNumberer(db_session)
    assert numberer.format_invoice_number(7) == "INV-007"
    assert numberer.format_invoice_number(1234) == "INV-1234"
    assert numberer.parse_invoice_number("INV-042") == 42
    assert numberer.parse_invoice_number("POS-042") is None
    assert numberer.parse_invoice_number("INV-abc") is None


def test_sequential_allocation(db_session):
    numberer = InvoiceNumberer(db_session)
    assert numberer.peek_next_invoice_number() == "INV-001"
    assert numberer.next_invoice_number() == "INV-001"
    assert numberer.next_invoice_number() == "INV-002"
    db_session.commit()
    assert numberer.peek_next_invoice_number() == "INV-003"


def test_seeded_from_existing_sales(db_session):
    db_session.add(Sale(invoice_number="INV-041", user_id=1))
    db_session.add(Sale(invoice_number="INV-009", user_id=1))
    db_session.commit()

    assert InvoiceNumberer(db_session).next_invoice_number() == "INV-042"


def test_grows_past_padding(db_session):
    db_session.add(InvoiceSequence(prefix="INV", last_number=999))
    db_session.commit()

    assert InvoiceNumberer(db_session).next_invoice_number() == "INV-1000"


def test_never_reissues_below_highest_sale(db_session):
    db_session.add(InvoiceSequence(prefix="INV", last_number=3))
    db_session.add(Sale(invoice_number="INV-1010", user_id=1))
    db_session.add(Sale(invoice_number="INV-999", user_id=1))
    db_session.commit()

    assert InvoiceNumberer(db_session).next_invoice_number() == "INV-1011"


def test_rollback_returns_the_number(db_session):
    numberer = InvoiceNumberer(db_session)
    numberer.next_invoice_number()
    db_session.rollback()
    assert numberer.next_invoice_number() == "INV-001"
