from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


SALE_STATUS_DRAFT = "draft"
SALE_STATUS_PENDING = "pending"
SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_CANCELLED = "cancelled"
SALE_STATUS_REFUNDED = "refunded"

FULFILLMENT_UNFULFILLED = "unfulfilled"
FULFILLMENT_FULFILLED = "fulfilled"
FULFILLMENT_STATUSES = (FULFILLMENT_UNFULFILLED, FULFILLMENT_FULFILLED)

DISCOUNT_FIXED = "fixed"
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_TYPES = (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE)

TXN_PAYMENT = "payment"
TXN_REFUND = "refund"
TXN_PURCHASE = "purchase"
TXN_PURCHASE_REFUND = "purchase_refund"

TXN_STATUS_COMPLETED = "completed"


def _dec(value):
    return str(value) if value is not None else None


class Sale(db.Model):
    """
    Sale aggregate: owns its SaleItems and payment Transactions.

    LIFECYCLE (status):
    draft/pending -> completed   (fully paid)
    draft/pending/completed -> cancelled
    completed -> refunded        (every unit returned)

    fulfillment_status is an independent axis: unfulfilled -> fulfilled,
    never from a cancelled sale.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable invoice number (e.g., "INV-007")
    invoice_number = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)  # null = walk-in
    user_id = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_PENDING, index=True)
    fulfillment_status = db.Column(db.String(16), nullable=False, default=FULFILLMENT_UNFULFILLED)

    # Bill-level discount as entered, and as resolved to a currency amount
    discount_type = db.Column(db.String(16), nullable=False, default=DISCOUNT_FIXED)
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # sum of post-line-discount line totals
    total_tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    tax_mode = db.Column(db.String(16), nullable=False, default="item")
    pricing_mode = db.Column(db.String(16), nullable=True)  # null when untaxed

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer")
    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "status": self.status,
            "fulfillment_status": self.fulfillment_status,
            "discount_type": self.discount_type,
            "discount_value": _dec(self.discount_value),
            "discount_amount": _dec(self.discount_amount),
            "subtotal": _dec(self.subtotal),
            "total_tax": _dec(self.total_tax),
            "total_amount": _dec(self.total_amount),
            "paid_amount": _dec(self.paid_amount),
            "tax_mode": self.tax_mode,
            "pricing_mode": self.pricing_mode,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "fulfilled_at": to_utc_z(self.fulfilled_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    Individual line on a sale.

    discount_amount is the line-level discount already resolved to currency,
    0 <= discount_amount <= price_per_unit * quantity. Immutable once the
    sale is completed; returns are recorded as ReturnItems instead.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False, index=True)

    price_per_unit = db.Column(db.Numeric(12, 2), nullable=False)
    cost_per_unit = db.Column(db.Numeric(12, 2), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Share of the bill discount carried by this line (pro-rated)
    global_discount_share = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(9, 4), nullable=False, default=0)  # effective percent
    tax_rule_snapshot = db.Column(db.JSON, nullable=True)

    line_total = db.Column(db.Numeric(12, 2), nullable=False)  # price * qty - line discount

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("Variant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "variant_id": self.variant_id,
            "price_per_unit": _dec(self.price_per_unit),
            "cost_per_unit": _dec(self.cost_per_unit),
            "quantity": self.quantity,
            "discount_amount": _dec(self.discount_amount),
            "global_discount_share": _dec(self.global_discount_share),
            "tax_amount": _dec(self.tax_amount),
            "tax_rate": _dec(self.tax_rate),
            "tax_rule_snapshot": self.tax_rule_snapshot or [],
            "line_total": _dec(self.line_total),
        }


class Transaction(db.Model):
    """
    Append-only money ledger entry.

    Linked to exactly one of Sale or PurchaseOrder. Refund entries carry a
    negative amount so SUM(amount) per sale is the net collected.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.CheckConstraint(
            "(sale_id IS NOT NULL AND purchase_order_id IS NULL) OR "
            "(sale_id IS NULL AND purchase_order_id IS NOT NULL)",
            name="ck_transactions_single_owner",
        ),
        db.Index("ix_transactions_sale_created", "sale_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)  # payment, refund, purchase, purchase_refund
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=TXN_STATUS_COMPLETED)

    user_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    sale = db.relationship("Sale", backref=db.backref("transactions", lazy=True, order_by="Transaction.id"))
    payment_method = db.relationship("PaymentMethod")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "purchase_order_id": self.purchase_order_id,
            "type": self.type,
            "amount": _dec(self.amount),
            "payment_method_id": self.payment_method_id,
            "status": self.status,
            "user_id": self.user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
