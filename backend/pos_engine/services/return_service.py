# Overview: Refund computation for partial returns and the return transaction.

"""
Refund Calculation

For each returned SaleItem:
    bill_items_subtotal = sum(price * qty - line_discount) over ALL sale items
    line_subtotal       = price * qty - line_discount       (full original line)
    line_global_share   = line_subtotal / bill_items_subtotal * bill_discount
    line_net_paid       = line_subtotal - line_global_share
    refund              = round_half_up(line_net_paid / qty * returned_qty, 2)

Intermediate ratios keep full Decimal precision; only the per-line refund
is rounded. The total refund sums the rounded lines without re-rounding.

The return that brings a line's cumulative quantity to the sold quantity
refunds round_half_up(line_net_paid) minus what earlier returns refunded for
that line, so a line is never refunded for more than it cost.

Tax added on top of EXCLUSIVE prices is not part of line_net_paid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import func

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Return, ReturnItem, Sale, Transaction
from ..models.inventory import FLOW_RETURN
from ..models.sales import SALE_STATUS_CANCELLED, SALE_STATUS_REFUNDED, TXN_PAYMENT, TXN_REFUND
from ..money import ZERO, quantize_money, sum_money, to_decimal
from ..time_utils import utcnow
from ..validation import coerce_id, coerce_optional_id, coerce_positive_int, require_actor
from .concurrency import lock_for_update, run_in_transaction
from .sales_service import require_payment_method

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundRequest:
    sale_item_id: int
    quantity: int

    @classmethod
    def coerce(cls, value: Any) -> "RefundRequest":
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            sale_item_id, quantity = value.get("sale_item_id"), value.get("quantity")
        else:
            sale_item_id, quantity = getattr(value, "sale_item_id", None), getattr(value, "quantity", None)
        return cls(
            sale_item_id=coerce_id(sale_item_id, "sale_item_id"),
            quantity=coerce_positive_int(quantity, "quantity"),
        )


@dataclass(frozen=True)
class RefundLine:
    sale_item_id: int
    quantity: int
    line_subtotal: Decimal
    line_global_discount: Decimal
    refund_amount: Decimal


def _line_subtotal(item) -> Decimal:
    return to_decimal(item.price_per_unit) * item.quantity - to_decimal(item.discount_amount)


def calculate_refunds(return_items: Iterable, sale_items: Sequence, sale_global_discount) -> list[RefundLine]:
    """
    Refund per returned line, pro-rating the bill discount.

    Raises NotFoundError for a sale item that is not part of ``sale_items``
    and ConflictError when a line returns more units than were sold. Either
    failure aborts the whole calculation.
    """
    requests = [RefundRequest.coerce(r) for r in return_items]
    by_id = {item.id: item for item in sale_items}
    bill_items_subtotal = sum_money(_line_subtotal(item) for item in sale_items)
    bill_discount = to_decimal(sale_global_discount)

    results = []
    for req in requests:
        item = by_id.get(req.sale_item_id)
        if item is None:
            raise NotFoundError(
                f"Sale item {req.sale_item_id} not found on this sale", details={"sale_item_id": req.sale_item_id}
            )
        if req.quantity > item.quantity:
            raise ConflictError(
                "Return quantity exceeds quantity sold",
                details={"sale_item_id": item.id, "requested": req.quantity, "sold": item.quantity},
            )

        line_subtotal = _line_subtotal(item)
        if bill_items_subtotal > 0:
            line_global_discount = line_subtotal / bill_items_subtotal * bill_discount
        else:
            line_global_discount = ZERO
        line_net_paid = line_subtotal - line_global_discount
        refund = quantize_money(line_net_paid / item.quantity * req.quantity)

        results.append(RefundLine(
            sale_item_id=item.id,
            quantity=req.quantity,
            line_subtotal=line_subtotal,
            line_global_discount=line_global_discount,
            refund_amount=refund,
        ))
    return results


def calculate_total_refund(results: Iterable[RefundLine]) -> Decimal:
    return sum_money(r.refund_amount for r in results)


class ReturnService:
    def __init__(self, session, inventory, audit, *, retry_attempts: int = 3):
        self.session = session
        self.inventory = inventory
        self.audit = audit
        self.retry_attempts = retry_attempts

    def returned_quantity(self, sale_item_id: int) -> int:
        """Units of a sale item already returned across all returns."""
        total = (
            self.session.query(func.coalesce(func.sum(ReturnItem.quantity), 0))
            .filter(ReturnItem.sale_item_id == sale_item_id)
            .scalar()
        )
        return int(total or 0)

    def refunded_amount(self, sale_item_id: int) -> Decimal:
        """Money already refunded for a sale item across all returns."""
        total = (
            self.session.query(func.coalesce(func.sum(ReturnItem.refund_amount), 0))
            .filter(ReturnItem.sale_item_id == sale_item_id)
            .scalar()
        )
        return to_decimal(total)

    def get_return(self, return_id: int) -> Return:
        doc = self.session.get(Return, coerce_id(return_id, "return_id"))
        if doc is None:
            raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})
        return doc

    def create_return(
        self,
        sale_id: int,
        items: Iterable,
        *,
        user_id: int,
        reason: str | None = None,
        payment_method_id: int | None = None,
    ) -> Return:
        """
        Record a (partial) return: refund, restock and ledger entry in one unit.

        Returned quantities are cumulative across returns; asking for more
        than remains on a line raises ConflictError.
        """
        user_id = require_actor(user_id)
        sale_id = coerce_id(sale_id, "sale_id")
        payment_method_id = coerce_optional_id(payment_method_id, "payment_method_id")
        requests = [RefundRequest.coerce(item) for item in (items or [])]
        if not requests:
            raise ValidationError("A return needs at least one line")
        seen = set()
        for req in requests:
            if req.sale_item_id in seen:
                raise ValidationError(
                    "Duplicate sale item in return", details={"sale_item_id": req.sale_item_id}
                )
            seen.add(req.sale_item_id)

        def _op():
            sale = lock_for_update(self.session.query(Sale).filter(Sale.id == sale_id)).first()
            if sale is None:
                raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
            if sale.status in (SALE_STATUS_CANCELLED, SALE_STATUS_REFUNDED):
                raise ConflictError(f"Cannot return items from a {sale.status} sale", details={"sale_id": sale_id})

            items_by_id = {item.id: item for item in sale.items}
            already_by_id = {}
            for req in requests:
                item = items_by_id.get(req.sale_item_id)
                if item is None:
                    raise NotFoundError(
                        f"Sale item {req.sale_item_id} not found on sale {sale_id}",
                        details={"sale_item_id": req.sale_item_id},
                    )
                already = self.returned_quantity(item.id)
                already_by_id[item.id] = already
                if already + req.quantity > item.quantity:
                    raise ConflictError(
                        "Return quantity exceeds quantity remaining",
                        details={
                            "sale_item_id": item.id,
                            "requested": req.quantity,
                            "sold": item.quantity,
                            "already_returned": already,
                        },
                    )

            refunds = [
                self._settle_last_units(
                    refund, items_by_id[refund.sale_item_id], already_by_id[refund.sale_item_id]
                )
                for refund in calculate_refunds(requests, sale.items, sale.discount_amount)
            ]
            total_refund = calculate_total_refund(refunds)
            timestamp = utcnow()

            doc = Return(
                sale_id=sale.id,
                user_id=user_id,
                reason=reason,
                total_refund=total_refund,
                created_at=timestamp,
            )
            for refund in refunds:
                doc.items.append(ReturnItem(
                    sale_item_id=refund.sale_item_id,
                    quantity=refund.quantity,
                    refund_amount=refund.refund_amount,
                ))
            self.session.add(doc)
            self.session.flush()

            for return_item in doc.items:
                self.inventory.restore_stock(
                    items_by_id[return_item.sale_item_id].variant_id,
                    return_item.quantity,
                    FLOW_RETURN,
                    reference_type="return_item",
                    reference_id=return_item.id,
                    user_id=user_id,
                    note=f"Return on {sale.invoice_number}",
                )

            # refund entry is capped at what was collected
            paid_back = min(total_refund, max(to_decimal(sale.paid_amount), ZERO))
            if paid_back > 0:
                method_id = payment_method_id
                if method_id is not None:
                    require_payment_method(self.session, method_id)
                else:
                    method_id = next(
                        (t.payment_method_id for t in sale.transactions if t.type == TXN_PAYMENT), None
                    )
                sale.transactions.append(Transaction(
                    type=TXN_REFUND,
                    amount=-paid_back,
                    payment_method_id=method_id,
                    user_id=user_id,
                    note=f"Return {doc.id}",
                    created_at=timestamp,
                ))
                sale.paid_amount = quantize_money(to_decimal(sale.paid_amount) - paid_back)

            self.session.flush()
            if all(self.returned_quantity(item.id) >= item.quantity for item in sale.items):
                sale.status = SALE_STATUS_REFUNDED
            self.session.flush()
            return doc

        doc = self._run(_op)
        logger.info("Return %s on sale %s refunded %s", doc.id, sale_id, doc.total_refund)
        self.audit.record(user_id, "return.create", "return", doc.id, after=doc.to_dict())
        return doc

    def _settle_last_units(self, refund: RefundLine, item, already_returned: int) -> RefundLine:
        """
        The return that empties a line refunds whatever is left of its net paid
        amount, so per-return rounding never adds up past what the line cost.
        """
        if already_returned + refund.quantity < item.quantity:
            return refund
        line_net_paid = quantize_money(refund.line_subtotal - refund.line_global_discount)
        remainder = max(line_net_paid - self.refunded_amount(item.id), ZERO)
        return replace(refund, refund_amount=remainder)

    def _run(self, func):
        return run_in_transaction(self.session, func, attempts=self.retry_attempts)
