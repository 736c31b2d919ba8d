from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


FLOW_SALE = "sale"
FLOW_SALE_CANCEL = "sale_cancel"
FLOW_RETURN = "return"
FLOW_PURCHASE = "purchase"
FLOW_ADJUSTMENT = "adjustment"


class StockFlow(db.Model):
    """
    Immutable record of one stock movement for a variant.

    quantity is signed: negative for reservations, positive for restocks
    and receipts. Rows are never updated or deleted.
    """
    __tablename__ = "stock_flows"
    __table_args__ = (
        db.Index("ix_stock_flows_variant_created", "variant_id", "created_at"),
        db.Index("ix_stock_flows_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)  # sale_item, return_item, purchase_order_item
    reference_id = db.Column(db.Integer, nullable=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True)

    note = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "event_type": self.event_type,
            "quantity": self.quantity,
            "balance_after": self.balance_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "lot_id": self.lot_id,
            "note": self.note,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockLot(db.Model):
    """Traceable batch created when goods are received."""
    __tablename__ = "stock_lots"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Numeric(12, 2), nullable=False)

    purchase_order_item_id = db.Column(
        db.Integer, db.ForeignKey("purchase_order_items.id"), nullable=True, index=True
    )
    lot_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_cost": str(self.unit_cost),
            "purchase_order_item_id": self.purchase_order_item_id,
            "lot_number": self.lot_number,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "created_at": to_utc_z(self.created_at),
        }


class InvoiceSequence(db.Model):
    """
    Last issued number per invoice prefix.

    Allocation is a single UPDATE ... SET last_number = last_number + 1, so
    two writers can never observe the same value.
    """
    __tablename__ = "invoice_sequences"

    prefix = db.Column(db.String(16), primary_key=True)
    last_number = db.Column(db.Integer, nullable=False, default=0)
