# Overview: Sale lifecycle: atomic creation, payment, fulfillment and cancellation.

"""
Sale Orchestration

create_sale runs as one transaction:
1. validate lines (variant exists and is active, quantity > 0)
2. reserve stock for every line (all-or-nothing)
3. compute line totals, the bill discount and its per-line shares
4. resolve tax per line on (line total - discount share)
5. allocate the invoice number
6. persist Sale, SaleItems and one payment Transaction per tender

Any failure rolls back the whole unit: no Sale row, no stock change, no
invoice number consumed.

TOTALS:
- subtotal      = sum of line totals (price * qty - line discount)
- EXCLUSIVE     total = subtotal - discount + total_tax
- INCLUSIVE     total = subtotal - discount (tax is already inside prices)
- untaxed       total = subtotal - discount
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Customer, PaymentMethod, Sale, SaleItem, Transaction, Variant
from ..models.inventory import FLOW_SALE, FLOW_SALE_CANCEL
from ..models.sales import (
    DISCOUNT_FIXED,
    DISCOUNT_PERCENTAGE,
    DISCOUNT_TYPES,
    FULFILLMENT_FULFILLED,
    FULFILLMENT_STATUSES,
    FULFILLMENT_UNFULFILLED,
    SALE_STATUS_CANCELLED,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_DRAFT,
    SALE_STATUS_PENDING,
    SALE_STATUS_REFUNDED,
    TXN_PAYMENT,
    TXN_REFUND,
)
from ..models.taxes import PRICING_INCLUSIVE
from ..money import HUNDRED, ZERO, quantize_money, sum_money, to_decimal
from ..time_utils import utcnow
from ..validation import (
    coerce_choice,
    coerce_id,
    coerce_money,
    coerce_optional_id,
    coerce_positive_int,
    require_actor,
)
from .concurrency import lock_for_update, run_in_transaction
from .inventory_service import StockRequest
from .tax_service import TAX_MODE_ITEM, TAX_MODES, CartContext, CartLine

logger = logging.getLogger(__name__)


# =============================================================================
# INPUTS
# =============================================================================

def _field(value, name, default=None):
    if isinstance(value, Mapping):
        return value.get(name, default)
    return getattr(value, name, default)


@dataclass(frozen=True)
class SaleLineInput:
    variant_id: int
    quantity: int
    discount_amount: Decimal = ZERO
    price_per_unit: Decimal | None = None  # None = current variant price

    @classmethod
    def coerce(cls, value: Any) -> "SaleLineInput":
        price = _field(value, "price_per_unit")
        return cls(
            variant_id=coerce_id(_field(value, "variant_id"), "variant_id"),
            quantity=coerce_positive_int(_field(value, "quantity"), "quantity"),
            discount_amount=coerce_money(_field(value, "discount_amount", ZERO), "discount_amount"),
            price_per_unit=None if price is None else coerce_money(price, "price_per_unit"),
        )


@dataclass(frozen=True)
class PaymentInput:
    payment_method_id: int
    amount: Decimal

    @classmethod
    def coerce(cls, value: Any) -> "PaymentInput":
        return cls(
            payment_method_id=coerce_id(_field(value, "payment_method_id"), "payment_method_id"),
            amount=coerce_money(_field(value, "amount"), "amount", allow_zero=False),
        )


@dataclass(frozen=True)
class DiscountInput:
    type: str = DISCOUNT_FIXED
    value: Decimal = ZERO

    @classmethod
    def coerce(cls, value: Any) -> "DiscountInput":
        if value is None:
            return cls()
        discount = cls(
            type=coerce_choice(_field(value, "type", DISCOUNT_FIXED), "discount_type", DISCOUNT_TYPES),
            value=coerce_money(_field(value, "value", ZERO), "discount_value"),
        )
        if discount.type == DISCOUNT_PERCENTAGE and discount.value > HUNDRED:
            raise ValidationError("Percentage discount cannot exceed 100", details={"value": str(discount.value)})
        return discount

    def resolve(self, subtotal: Decimal) -> Decimal:
        """Currency amount of the bill discount against the post-line-discount subtotal."""
        if self.type == DISCOUNT_PERCENTAGE:
            return quantize_money(subtotal * self.value / HUNDRED)
        return quantize_money(self.value)


def allocate_discount(line_totals: Sequence[Decimal], discount: Decimal) -> list[Decimal]:
    """
    Pro-rate a bill discount across lines by line total.

    Each share is rounded to cents; the last line takes the remainder so the
    shares always sum to ``discount`` exactly.
    """
    subtotal = sum_money(line_totals)
    if not line_totals or subtotal <= 0 or discount <= 0:
        return [quantize_money(ZERO) for _ in line_totals]

    shares = []
    allocated = ZERO
    for total in line_totals[:-1]:
        share = quantize_money(discount * to_decimal(total) / subtotal)
        shares.append(share)
        allocated += share
    shares.append(quantize_money(discount - allocated))
    return shares


def require_payment_method(session, payment_method_id: int) -> PaymentMethod:
    method = session.get(PaymentMethod, payment_method_id)
    if method is None:
        raise NotFoundError(
            f"Payment method {payment_method_id} not found", details={"payment_method_id": payment_method_id}
        )
    if not method.is_active:
        raise ValidationError(
            f"Payment method {method.name} is inactive", details={"payment_method_id": payment_method_id}
        )
    return method


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SaleOrchestrator:
    def __init__(self, session, inventory, tax_service, numberer, audit, *, retry_attempts: int = 3):
        self.session = session
        self.inventory = inventory
        self.tax_service = tax_service
        self.numberer = numberer
        self.audit = audit
        self.retry_attempts = retry_attempts

    def _transaction(self, func):
        return run_in_transaction(self.session, func, attempts=self.retry_attempts)

    def _load_sale(self, sale_id: int, *, lock: bool = False) -> Sale:
        query = self.session.query(Sale).filter(Sale.id == sale_id)
        if lock:
            query = lock_for_update(query)
        sale = query.first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        return sale

    def get_sale(self, sale_id: int) -> Sale:
        return self._load_sale(coerce_id(sale_id, "sale_id"))

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_sale(
        self,
        items: Iterable,
        *,
        user_id: int,
        customer_id: int | None = None,
        discount: Any = None,
        payments: Iterable = (),
        tax_mode: str = TAX_MODE_ITEM,
        bill_tax_ids: Sequence[int] | None = None,
        fulfillment_status: str = FULFILLMENT_UNFULFILLED,
        now=None,
    ) -> Sale:
        user_id = require_actor(user_id)
        lines = [SaleLineInput.coerce(item) for item in (items or [])]
        if not lines:
            raise ValidationError("A sale needs at least one line")
        customer_id = coerce_optional_id(customer_id, "customer_id")
        discount = DiscountInput.coerce(discount)
        payments = [PaymentInput.coerce(p) for p in (payments or [])]
        tax_mode = coerce_choice(tax_mode or TAX_MODE_ITEM, "tax_mode", TAX_MODES)
        fulfillment_status = coerce_choice(fulfillment_status, "fulfillment_status", FULFILLMENT_STATUSES)

        def _op():
            timestamp = now or utcnow()

            variants = {}
            for line in lines:
                variant = self.session.get(Variant, line.variant_id)
                if variant is None:
                    raise NotFoundError(f"Variant {line.variant_id} not found", details={"variant_id": line.variant_id})
                if not variant.is_active:
                    raise ValidationError(f"Variant {variant.id} is inactive", details={"variant_id": variant.id})
                variants[line.variant_id] = variant

            customer = None
            if customer_id is not None:
                customer = self.session.get(Customer, customer_id)
                if customer is None:
                    raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})

            # Line totals and the bill discount
            prices = []
            line_totals = []
            for line in lines:
                price = line.price_per_unit if line.price_per_unit is not None else to_decimal(variants[line.variant_id].price)
                gross = quantize_money(price * line.quantity)
                if line.discount_amount > gross:
                    raise ValidationError(
                        "Line discount exceeds line amount",
                        details={"variant_id": line.variant_id, "discount_amount": str(line.discount_amount)},
                    )
                prices.append(quantize_money(price))
                line_totals.append(gross - line.discount_amount)

            subtotal = quantize_money(sum_money(line_totals))
            discount_amount = discount.resolve(subtotal)
            if discount_amount > subtotal:
                raise ValidationError(
                    "Discount exceeds sale subtotal",
                    details={"discount_amount": str(discount_amount), "subtotal": str(subtotal)},
                )
            shares = allocate_discount(line_totals, discount_amount)
            net_total = subtotal - discount_amount

            # Tax
            resolver = self.tax_service.load_resolver(tax_mode, bill_tax_ids)
            cart = [
                CartLine(
                    ref=idx,
                    unit_price=prices[idx],
                    quantity=line.quantity,
                    subtotal=line_totals[idx] - shares[idx],
                    variant_id=line.variant_id,
                    product_id=variants[line.variant_id].product_id,
                    tax_category_id=(
                        variants[line.variant_id].product.tax_category_id
                        if variants[line.variant_id].product is not None else None
                    ),
                )
                for idx, line in enumerate(lines)
            ]
            context = CartContext(
                invoice_total=net_total,
                customer_type=customer.customer_type if customer else None,
                tax_exempt=bool(customer and customer.is_tax_exempt),
            )
            breakdown = resolver.resolve(cart, context, timestamp)

            total_amount = net_total if breakdown.is_inclusive else net_total + breakdown.total_tax

            # Tenders
            for payment in payments:
                require_payment_method(self.session, payment.payment_method_id)
            paid_amount = quantize_money(sum_money(p.amount for p in payments))

            # stock moves only after every check above has passed
            flows = self.inventory.reserve_lines(
                [StockRequest(line.variant_id, line.quantity) for line in lines],
                event_type=FLOW_SALE,
                user_id=user_id,
            )

            sale = Sale(
                invoice_number=self.numberer.next_invoice_number(),
                customer_id=customer_id,
                user_id=user_id,
                fulfillment_status=fulfillment_status,
                discount_type=discount.type,
                discount_value=discount.value,
                discount_amount=discount_amount,
                subtotal=subtotal,
                total_tax=breakdown.total_tax,
                total_amount=quantize_money(total_amount),
                paid_amount=paid_amount,
                tax_mode=tax_mode,
                pricing_mode=breakdown.pricing_mode,
                created_at=timestamp,
            )
            if paid_amount >= sale.total_amount:
                sale.status = SALE_STATUS_COMPLETED
                sale.completed_at = timestamp
            else:
                sale.status = SALE_STATUS_PENDING
            if fulfillment_status == FULFILLMENT_FULFILLED:
                sale.fulfilled_at = timestamp

            for idx, line in enumerate(lines):
                line_tax = breakdown.for_line(idx)
                sale.items.append(SaleItem(
                    variant_id=line.variant_id,
                    price_per_unit=prices[idx],
                    cost_per_unit=variants[line.variant_id].cost_price,
                    quantity=line.quantity,
                    discount_amount=line.discount_amount,
                    global_discount_share=shares[idx],
                    tax_amount=line_tax.tax_amount,
                    tax_rate=line_tax.effective_rate,
                    tax_rule_snapshot=line_tax.snapshot(),
                    line_total=line_totals[idx],
                ))

            for payment in payments:
                sale.transactions.append(Transaction(
                    type=TXN_PAYMENT,
                    amount=payment.amount,
                    payment_method_id=payment.payment_method_id,
                    user_id=user_id,
                    created_at=timestamp,
                ))

            self.session.add(sale)
            self.session.flush()

            for flow, item in zip(flows, sale.items):
                flow.reference_type = "sale_item"
                flow.reference_id = item.id
                flow.note = f"Sale {sale.invoice_number}"
            return sale

        sale = self._transaction(_op)
        logger.info("Sale %s created: total %s, paid %s", sale.invoice_number, sale.total_amount, sale.paid_amount)
        self.audit.record(user_id, "sale.create", "sale", sale.id, after=sale.to_dict(include_items=True))
        return sale

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def cancel_sale(self, sale_id: int, *, user_id: int, reason: str | None = None) -> Sale:
        """
        Cancel a sale: restock un-returned units and refund what was collected.

        Refuses a sale that is already cancelled or fully refunded.
        """
        user_id = require_actor(user_id)
        sale_id = coerce_id(sale_id, "sale_id")
        snapshot = {}

        def _op():
            sale = self._load_sale(sale_id, lock=True)
            if sale.status == SALE_STATUS_CANCELLED:
                raise ConflictError("Sale is already cancelled", details={"sale_id": sale_id})
            if sale.status == SALE_STATUS_REFUNDED:
                raise ConflictError("Cannot cancel a refunded sale", details={"sale_id": sale_id})
            snapshot["before"] = sale.to_dict()
            timestamp = utcnow()

            for item in sale.items:
                returned = sum(ri.quantity for ri in item.return_items)
                remaining = item.quantity - returned
                if remaining > 0:
                    self.inventory.restore_stock(
                        item.variant_id,
                        remaining,
                        FLOW_SALE_CANCEL,
                        reference_type="sale_item",
                        reference_id=item.id,
                        user_id=user_id,
                        note=f"Cancel {sale.invoice_number}",
                    )

            paid = to_decimal(sale.paid_amount)
            if paid > 0:
                sale.transactions.append(Transaction(
                    type=TXN_REFUND,
                    amount=-paid,
                    payment_method_id=_first_payment_method_id(sale),
                    user_id=user_id,
                    note=reason or "Sale cancelled",
                    created_at=timestamp,
                ))

            sale.status = SALE_STATUS_CANCELLED
            sale.paid_amount = ZERO
            sale.cancelled_at = timestamp
            sale.cancelled_by_user_id = user_id
            self.session.flush()
            return sale

        sale = self._transaction(_op)
        logger.info("Sale %s cancelled by user %s", sale.invoice_number, user_id)
        self.audit.record(user_id, "sale.cancel", "sale", sale.id, before=snapshot.get("before"), after=sale.to_dict())
        return sale

    def add_payment(self, sale_id: int, amount, payment_method_id: int, *, user_id: int) -> Transaction:
        user_id = require_actor(user_id)
        sale_id = coerce_id(sale_id, "sale_id")
        amount = coerce_money(amount, "amount", allow_zero=False)
        payment_method_id = coerce_id(payment_method_id, "payment_method_id")
        snapshot = {}

        def _op():
            sale = self._load_sale(sale_id, lock=True)
            if sale.status in (SALE_STATUS_CANCELLED, SALE_STATUS_REFUNDED):
                raise ConflictError(f"Cannot add payment to a {sale.status} sale", details={"sale_id": sale_id})
            require_payment_method(self.session, payment_method_id)
            snapshot["before"] = sale.to_dict()
            timestamp = utcnow()

            txn = Transaction(
                type=TXN_PAYMENT,
                amount=amount,
                payment_method_id=payment_method_id,
                user_id=user_id,
                created_at=timestamp,
            )
            sale.transactions.append(txn)
            sale.paid_amount = quantize_money(to_decimal(sale.paid_amount) + amount)
            if sale.status in (SALE_STATUS_DRAFT, SALE_STATUS_PENDING) and sale.paid_amount >= sale.total_amount:
                sale.status = SALE_STATUS_COMPLETED
                sale.completed_at = timestamp
            self.session.flush()
            return txn

        txn = self._transaction(_op)
        sale = txn.sale
        self.audit.record(user_id, "sale.payment", "sale", sale.id, before=snapshot.get("before"), after=sale.to_dict())
        return txn

    def fulfill_sale(self, sale_id: int, *, user_id: int) -> Sale:
        user_id = require_actor(user_id)
        sale_id = coerce_id(sale_id, "sale_id")

        def _op():
            sale = self._load_sale(sale_id, lock=True)
            if sale.status == SALE_STATUS_CANCELLED:
                raise ConflictError("Cannot fulfill a cancelled sale", details={"sale_id": sale_id})
            if sale.fulfillment_status == FULFILLMENT_FULFILLED:
                raise ConflictError("Sale is already fulfilled", details={"sale_id": sale_id})
            sale.fulfillment_status = FULFILLMENT_FULFILLED
            sale.fulfilled_at = utcnow()
            self.session.flush()
            return sale

        sale = self._transaction(_op)
        self.audit.record(
            user_id, "sale.fulfill", "sale", sale.id,
            before={"fulfillment_status": FULFILLMENT_UNFULFILLED},
            after={"fulfillment_status": sale.fulfillment_status},
        )
        return sale


def _first_payment_method_id(sale: Sale) -> int | None:
    for txn in sale.transactions:
        if txn.type == TXN_PAYMENT and txn.payment_method_id is not None:
            return txn.payment_method_id
    return None
