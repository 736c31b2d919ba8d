# Overview: Tax rule resolution (pure) and tax configuration loading/creation.

"""
Tax Rule Resolution

MATCHING (all must hold, see RULE_PREDICATES):
- scope: GLOBAL, or CATEGORY matching the line's tax category, or PRODUCT
  matching the line's variant (when the rule names one) or product
- price band contains the line's unit price (null bound = open)
- invoice band contains the cart's running total (null bound = open)
- customer_type, when set on the rule, equals the cart's customer type
- now falls in [valid_from, valid_to] (null bound = open)

ORDER: ascending priority, ties by ascending id.

EXCLUSIVE pricing:
- non-compound rule taxes the original line subtotal
- compound rule taxes subtotal + every contribution applied before it

INCLUSIVE pricing:
- the same chain run on a unit base gives the gross/net factor
- net = subtotal / factor, then the chain runs on net to split the tax

ROUNDING: each rule contribution, each line, and the cart total are rounded
to cents half-up, once, at their own boundary.

A malformed rule (CATEGORY without category, inverted band or window,
negative rate) raises ValidationError instead of being skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Sequence

from ..errors import NotFoundError, ValidationError
from ..models import TaxCategory, TaxProfile, TaxRule
from ..models.taxes import (
    PRICING_EXCLUSIVE,
    PRICING_INCLUSIVE,
    PRICING_MODES,
    SCOPE_CATEGORY,
    SCOPE_GLOBAL,
    SCOPE_PRODUCT,
    TAX_SCOPES,
)
from ..money import HUNDRED, ONE, ZERO, percent_of, quantize_money, to_decimal
from ..time_utils import to_utc_naive, utcnow
from ..validation import (
    coerce_choice,
    coerce_datetime,
    coerce_int,
    coerce_money,
    coerce_optional_id,
    coerce_rate,
)
from .concurrency import run_in_transaction

logger = logging.getLogger(__name__)


TAX_MODE_ITEM = "item"
TAX_MODE_BILL = "bill"
TAX_MODE_NONE = "none"
TAX_MODES = (TAX_MODE_ITEM, TAX_MODE_BILL, TAX_MODE_NONE)

RATE_PLACES = Decimal("0.0001")


# =============================================================================
# INPUT / OUTPUT SHAPES
# =============================================================================

@dataclass(frozen=True)
class CartLine:
    """One cart line as the resolver sees it. ``subtotal`` is the taxable amount."""
    ref: Any
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    variant_id: int | None = None
    product_id: int | None = None
    tax_category_id: int | None = None


@dataclass(frozen=True)
class CartContext:
    invoice_total: Decimal
    customer_type: str | None = None
    tax_exempt: bool = False


@dataclass(frozen=True)
class AppliedTax:
    rule_id: int
    name: str
    rate_percent: Decimal
    is_compound: bool
    priority: int
    base: Decimal
    amount: Decimal

    def to_snapshot(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.name,
            "rate": str(self.rate_percent),
            "is_compound": self.is_compound,
            "priority": self.priority,
            "base": str(quantize_money(self.base)),
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class LineTax:
    ref: Any
    taxable_amount: Decimal
    tax_amount: Decimal
    effective_rate: Decimal
    applied: tuple[AppliedTax, ...] = ()

    def snapshot(self) -> list[dict]:
        return [a.to_snapshot() for a in self.applied]


@dataclass(frozen=True)
class TaxBreakdown:
    lines: tuple[LineTax, ...]
    total_tax: Decimal
    pricing_mode: str | None = None

    @property
    def is_inclusive(self) -> bool:
        return self.pricing_mode == PRICING_INCLUSIVE

    def for_line(self, ref) -> LineTax:
        for line in self.lines:
            if line.ref == ref:
                return line
        raise KeyError(ref)


# =============================================================================
# RULE VALIDATION
# =============================================================================

def _bound(value) -> Decimal | None:
    return None if value is None else to_decimal(value)


def validate_rule(rule) -> None:
    """Reject rule configurations the resolver cannot evaluate deterministically."""
    rule_id = getattr(rule, "id", None)
    details = {"rule_id": rule_id}

    if rule.scope not in TAX_SCOPES:
        raise ValidationError(f"Tax rule {rule_id} has invalid scope {rule.scope!r}", details=details)
    if rule.scope == SCOPE_CATEGORY and rule.tax_category_id is None:
        raise ValidationError(f"Tax rule {rule_id} is CATEGORY-scoped but has no tax category", details=details)
    if rule.scope == SCOPE_PRODUCT and rule.product_id is None and rule.variant_id is None:
        raise ValidationError(f"Tax rule {rule_id} is PRODUCT-scoped but names no product or variant", details=details)

    if rule.rate_percent is None or to_decimal(rule.rate_percent) < 0:
        raise ValidationError(f"Tax rule {rule_id} has a negative or missing rate", details=details)

    for low_name, high_name in (("min_price", "max_price"), ("min_invoice_total", "max_invoice_total")):
        low = _bound(getattr(rule, low_name))
        high = _bound(getattr(rule, high_name))
        if low is not None and high is not None and low > high:
            raise ValidationError(
                f"Tax rule {rule_id} has {low_name} greater than {high_name}",
                details={**details, low_name: str(low), high_name: str(high)},
            )

    valid_from = coerce_datetime(rule.valid_from, "valid_from")
    valid_to = coerce_datetime(rule.valid_to, "valid_to")
    if valid_from is not None and valid_to is not None and valid_from > valid_to:
        raise ValidationError(f"Tax rule {rule_id} has valid_from after valid_to", details=details)


# =============================================================================
# APPLICABILITY PREDICATES
# =============================================================================

def matches_scope(rule, line: CartLine, context: CartContext, now: datetime) -> bool:
    if rule.scope == SCOPE_GLOBAL:
        return True
    if rule.scope == SCOPE_CATEGORY:
        return line.tax_category_id is not None and rule.tax_category_id == line.tax_category_id
    if rule.scope == SCOPE_PRODUCT:
        if rule.variant_id is not None:
            return rule.variant_id == line.variant_id
        return line.product_id is not None and rule.product_id == line.product_id
    return False


def _within(value: Decimal, low, high) -> bool:
    low = _bound(low)
    high = _bound(high)
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def within_price_band(rule, line: CartLine, context: CartContext, now: datetime) -> bool:
    return _within(to_decimal(line.unit_price), rule.min_price, rule.max_price)


def within_invoice_band(rule, line: CartLine, context: CartContext, now: datetime) -> bool:
    return _within(to_decimal(context.invoice_total), rule.min_invoice_total, rule.max_invoice_total)


def matches_customer_type(rule, line: CartLine, context: CartContext, now: datetime) -> bool:
    if not rule.customer_type:
        return True
    return rule.customer_type == context.customer_type


def within_validity_window(rule, line: CartLine, context: CartContext, now: datetime) -> bool:
    valid_from = to_utc_naive(rule.valid_from)
    valid_to = to_utc_naive(rule.valid_to)
    if valid_from is not None and now < valid_from:
        return False
    if valid_to is not None and now > valid_to:
        return False
    return True


Predicate = Callable[[Any, CartLine, CartContext, datetime], bool]

RULE_PREDICATES: tuple[Predicate, ...] = (
    matches_scope,
    within_price_band,
    within_invoice_band,
    matches_customer_type,
    within_validity_window,
)

# Bill-level taxes apply to every line regardless of the rule's own scope
BILL_PREDICATES: tuple[Predicate, ...] = RULE_PREDICATES[1:]


def rule_applies(rule, line: CartLine, context: CartContext, now: datetime,
                 predicates: Sequence[Predicate] = RULE_PREDICATES) -> bool:
    return all(check(rule, line, context, now) for check in predicates)


# =============================================================================
# RESOLVER
# =============================================================================

def _sort_key(rule):
    return (rule.priority or 0, rule.id or 0)


def _chain(base: Decimal, rules: Sequence) -> list[AppliedTax]:
    applied: list[AppliedTax] = []
    running = ZERO
    for rule in rules:
        rate = to_decimal(rule.rate_percent)
        rule_base = base + running if rule.is_compound else base
        amount = quantize_money(percent_of(rule_base, rate))
        applied.append(AppliedTax(
            rule_id=rule.id,
            name=rule.label() if hasattr(rule, "label") else (rule.name or f"Tax ({rate}%)"),
            rate_percent=rate,
            is_compound=bool(rule.is_compound),
            priority=rule.priority or 0,
            base=rule_base,
            amount=amount,
        ))
        running += amount
    return applied


def _inclusive_factor(rules: Sequence) -> Decimal:
    running = ZERO
    for rule in rules:
        rate = to_decimal(rule.rate_percent) / HUNDRED
        running += (ONE + running) * rate if rule.is_compound else rate
    return ONE + running


class TaxRuleResolver:
    """
    Pure tax computation over a fixed profile and rule set.

    Holds no mutable state: resolving the same cart at the same instant
    always yields the same breakdown.
    """

    def __init__(self, profile=None, rules: Iterable = (), *, predicates: Sequence[Predicate] = RULE_PREDICATES):
        self.profile_id = getattr(profile, "id", None)
        self.pricing_mode = profile.pricing_mode if profile is not None else None
        self.rules = tuple(sorted(rules, key=_sort_key)) if profile is not None else ()
        self.predicates = tuple(predicates)

        if self.pricing_mode is not None and self.pricing_mode not in PRICING_MODES:
            raise ValidationError(f"Tax profile {self.profile_id} has invalid pricing mode {self.pricing_mode!r}")

    @property
    def is_active(self) -> bool:
        return self.pricing_mode is not None

    def applicable_rules(self, line: CartLine, context: CartContext, now: datetime) -> list:
        return [r for r in self.rules if rule_applies(r, line, context, now, self.predicates)]

    def compute_line(self, line: CartLine, context: CartContext, now: datetime) -> LineTax:
        subtotal = to_decimal(line.subtotal)
        if not self.is_active or context.tax_exempt:
            return LineTax(ref=line.ref, taxable_amount=quantize_money(subtotal), tax_amount=quantize_money(ZERO),
                           effective_rate=ZERO)

        rules = self.applicable_rules(line, context, now)
        if not rules:
            return LineTax(ref=line.ref, taxable_amount=quantize_money(subtotal), tax_amount=quantize_money(ZERO),
                           effective_rate=ZERO)

        if self.pricing_mode == PRICING_INCLUSIVE:
            base = subtotal / _inclusive_factor(rules)
        else:
            base = subtotal

        applied = _chain(base, rules)
        tax_amount = quantize_money(sum((a.amount for a in applied), ZERO))

        if self.pricing_mode == PRICING_INCLUSIVE:
            taxable = quantize_money(subtotal - tax_amount)
        else:
            taxable = quantize_money(subtotal)

        effective_rate = ZERO
        if taxable > 0:
            effective_rate = (tax_amount / taxable * HUNDRED).quantize(RATE_PLACES)

        return LineTax(
            ref=line.ref,
            taxable_amount=taxable,
            tax_amount=tax_amount,
            effective_rate=effective_rate,
            applied=tuple(applied),
        )

    def resolve(self, lines: Sequence[CartLine], context: CartContext, now: datetime | None = None) -> TaxBreakdown:
        now = to_utc_naive(now) if now is not None else utcnow()

        # Fail on any malformed rule, whether or not it would match this cart
        for rule in self.rules:
            validate_rule(rule)

        line_taxes = tuple(self.compute_line(line, context, now) for line in lines)
        total = quantize_money(sum((lt.tax_amount for lt in line_taxes), ZERO))
        return TaxBreakdown(lines=line_taxes, total_tax=total, pricing_mode=self.pricing_mode)


# =============================================================================
# CONFIGURATION (store-backed)
# =============================================================================

class TaxRuleService:
    """Loads the active tax configuration and validates new configuration."""

    def __init__(self, session, *, retry_attempts: int = 3):
        self.session = session
        self.retry_attempts = retry_attempts

    def active_profile(self) -> TaxProfile | None:
        return (
            self.session.query(TaxProfile)
            .filter(TaxProfile.is_active.is_(True))
            .order_by(TaxProfile.id)
            .first()
        )

    def rules_for_profile(self, profile_id: int) -> list[TaxRule]:
        return (
            self.session.query(TaxRule)
            .filter(TaxRule.tax_profile_id == profile_id)
            .order_by(TaxRule.priority, TaxRule.id)
            .all()
        )

    def load_resolver(self, tax_mode: str = TAX_MODE_ITEM, bill_tax_ids: Sequence[int] | None = None) -> TaxRuleResolver:
        """
        Build a resolver for one cart.

        - item: active profile and all its rules
        - bill: only the listed rules, applied to every line
        - none: untaxed
        """
        tax_mode = coerce_choice(tax_mode or TAX_MODE_ITEM, "tax_mode", TAX_MODES)

        if tax_mode == TAX_MODE_NONE:
            return TaxRuleResolver()

        profile = self.active_profile()

        if tax_mode == TAX_MODE_BILL:
            ids = sorted({coerce_int(i, "bill_tax_ids") for i in (bill_tax_ids or [])})
            if not ids:
                return TaxRuleResolver()
            rules = self.session.query(TaxRule).filter(TaxRule.id.in_(ids)).all()
            missing = set(ids) - {r.id for r in rules}
            if missing:
                raise NotFoundError("Tax rule not found", details={"rule_ids": sorted(missing)})
            if profile is None:
                profile = self.session.get(TaxProfile, rules[0].tax_profile_id)
            return TaxRuleResolver(profile, rules, predicates=BILL_PREDICATES)

        if profile is None:
            logger.debug("No active tax profile; cart is untaxed")
            return TaxRuleResolver()
        return TaxRuleResolver(profile, self.rules_for_profile(profile.id))

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_profile(
        self,
        *,
        name: str,
        pricing_mode: str = PRICING_EXCLUSIVE,
        country_code: str | None = None,
        region_code: str | None = None,
        is_active: bool = False,
    ) -> TaxProfile:
        if not name or not name.strip():
            raise ValidationError("name is required")
        pricing_mode = coerce_choice(pricing_mode, "pricing_mode", PRICING_MODES)

        def _op():
            if is_active:
                self._deactivate_all()
            profile = TaxProfile(
                name=name.strip(),
                pricing_mode=pricing_mode,
                country_code=country_code,
                region_code=region_code,
                is_active=bool(is_active),
            )
            self.session.add(profile)
            self.session.flush()
            return profile

        return run_in_transaction(self.session, _op, attempts=self.retry_attempts)

    def activate_profile(self, profile_id: int) -> TaxProfile:
        def _op():
            profile = self.session.get(TaxProfile, profile_id)
            if profile is None:
                raise NotFoundError(f"Tax profile {profile_id} not found")
            self._deactivate_all()
            profile.is_active = True
            return profile

        return run_in_transaction(self.session, _op, attempts=self.retry_attempts)

    def _deactivate_all(self) -> None:
        for profile in self.session.query(TaxProfile).filter(TaxProfile.is_active.is_(True)).all():
            profile.is_active = False
        self.session.flush()

    def create_category(self, *, name: str, description: str | None = None) -> TaxCategory:
        if not name or not name.strip():
            raise ValidationError("name is required")

        def _op():
            category = TaxCategory(name=name.strip(), description=description)
            self.session.add(category)
            self.session.flush()
            return category

        return run_in_transaction(self.session, _op, attempts=self.retry_attempts)

    def create_rule(
        self,
        *,
        tax_profile_id: int,
        rate_percent,
        scope: str = SCOPE_GLOBAL,
        name: str | None = None,
        tax_category_id: int | None = None,
        product_id: int | None = None,
        variant_id: int | None = None,
        min_price=None,
        max_price=None,
        min_invoice_total=None,
        max_invoice_total=None,
        customer_type: str | None = None,
        is_compound: bool = False,
        priority: int = 0,
        valid_from=None,
        valid_to=None,
    ) -> TaxRule:
        """Validate and persist a rule. Malformed rules never reach the store."""
        def _optional_money(value, field_name):
            return None if value is None else coerce_money(value, field_name)

        rule = TaxRule(
            tax_profile_id=coerce_optional_id(tax_profile_id, "tax_profile_id"),
            name=name,
            scope=coerce_choice(scope, "scope", TAX_SCOPES),
            tax_category_id=coerce_optional_id(tax_category_id, "tax_category_id"),
            product_id=coerce_optional_id(product_id, "product_id"),
            variant_id=coerce_optional_id(variant_id, "variant_id"),
            min_price=_optional_money(min_price, "min_price"),
            max_price=_optional_money(max_price, "max_price"),
            min_invoice_total=_optional_money(min_invoice_total, "min_invoice_total"),
            max_invoice_total=_optional_money(max_invoice_total, "max_invoice_total"),
            customer_type=customer_type or None,
            rate_percent=coerce_rate(rate_percent),
            is_compound=bool(is_compound),
            priority=coerce_int(priority, "priority"),
            valid_from=coerce_datetime(valid_from, "valid_from"),
            valid_to=coerce_datetime(valid_to, "valid_to"),
        )
        if rule.tax_profile_id is None:
            raise ValidationError("tax_profile_id is required")
        validate_rule(rule)

        def _op():
            if self.session.get(TaxProfile, rule.tax_profile_id) is None:
                raise NotFoundError(f"Tax profile {rule.tax_profile_id} not found")
            if rule.tax_category_id is not None and self.session.get(TaxCategory, rule.tax_category_id) is None:
                raise NotFoundError(f"Tax category {rule.tax_category_id} not found")
            self.session.add(rule)
            self.session.flush()
            return rule

        return run_in_transaction(self.session, _op, attempts=self.retry_attempts)
