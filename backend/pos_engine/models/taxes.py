from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PRICING_INCLUSIVE = "INCLUSIVE"
PRICING_EXCLUSIVE = "EXCLUSIVE"
PRICING_MODES = (PRICING_INCLUSIVE, PRICING_EXCLUSIVE)

SCOPE_GLOBAL = "GLOBAL"
SCOPE_CATEGORY = "CATEGORY"
SCOPE_PRODUCT = "PRODUCT"
TAX_SCOPES = (SCOPE_GLOBAL, SCOPE_CATEGORY, SCOPE_PRODUCT)


class TaxProfile(db.Model):
    """
    Jurisdiction-level tax configuration.

    At most one profile is active at a time. When none is active every
    cart is untaxed.
    """
    __tablename__ = "tax_profiles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    country_code = db.Column(db.String(2), nullable=True)
    region_code = db.Column(db.String(16), nullable=True)

    # INCLUSIVE: listed prices already contain tax. EXCLUSIVE: tax added on top.
    pricing_mode = db.Column(db.String(16), nullable=False, default=PRICING_EXCLUSIVE)

    is_active = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "country_code": self.country_code,
            "region_code": self.region_code,
            "pricing_mode": self.pricing_mode,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class TaxCategory(db.Model):
    """Groups products for CATEGORY-scoped rules."""
    __tablename__ = "tax_categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}


class TaxRule(db.Model):
    """
    One rate applied to the lines it matches.

    MATCHING: scope + price band (unit price) + invoice band (cart total)
    + customer_type + validity window, all ANDed. Null bounds are open.

    ORDER: ascending priority, then ascending id.
    """
    __tablename__ = "tax_rules"
    __table_args__ = (
        db.CheckConstraint("rate_percent >= 0", name="ck_tax_rules_rate_non_negative"),
        db.Index("ix_tax_rules_profile_priority", "tax_profile_id", "priority", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tax_profile_id = db.Column(db.Integer, db.ForeignKey("tax_profiles.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=True)

    scope = db.Column(db.String(16), nullable=False, default=SCOPE_GLOBAL)
    tax_category_id = db.Column(db.Integer, db.ForeignKey("tax_categories.id"), nullable=True, index=True)
    # PRODUCT scope matches on either the product or one variant of it
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True)

    min_price = db.Column(db.Numeric(12, 2), nullable=True)
    max_price = db.Column(db.Numeric(12, 2), nullable=True)
    min_invoice_total = db.Column(db.Numeric(12, 2), nullable=True)
    max_invoice_total = db.Column(db.Numeric(12, 2), nullable=True)

    customer_type = db.Column(db.String(32), nullable=True)

    rate_percent = db.Column(db.Numeric(7, 4), nullable=False)
    is_compound = db.Column(db.Boolean, nullable=False, default=False)
    priority = db.Column(db.Integer, nullable=False, default=0)

    valid_from = db.Column(db.DateTime, nullable=True)
    valid_to = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    tax_profile = db.relationship("TaxProfile", backref=db.backref("rules", lazy=True))
    tax_category = db.relationship("TaxCategory")

    def label(self) -> str:
        if self.name:
            return self.name
        if self.tax_category is not None:
            return f"{self.tax_category.name} ({self.rate_percent}%)"
        return f"Tax ({self.rate_percent}%)"

    def to_dict(self) -> dict:
        def _dec(value):
            return str(value) if value is not None else None

        return {
            "id": self.id,
            "tax_profile_id": self.tax_profile_id,
            "name": self.name,
            "scope": self.scope,
            "tax_category_id": self.tax_category_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "min_price": _dec(self.min_price),
            "max_price": _dec(self.max_price),
            "min_invoice_total": _dec(self.min_invoice_total),
            "max_invoice_total": _dec(self.max_invoice_total),
            "customer_type": self.customer_type,
            "rate_percent": _dec(self.rate_percent),
            "is_compound": self.is_compound,
            "priority": self.priority,
            "valid_from": to_utc_z(self.valid_from),
            "valid_to": to_utc_z(self.valid_to),
        }
