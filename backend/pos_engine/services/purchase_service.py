# Overview: Purchase order creation and its one-way receive/cancel transitions.

"""
Purchase Order Lifecycle

pending -> received   stock received per line (lot + flow)
pending -> cancelled  any payment reversed with a purchase_refund entry

Both transitions are a conditional UPDATE ... WHERE status = 'pending'.
Zero affected rows means the order is missing (NotFoundError) or was
already moved by another request (ConflictError). Nothing else changes in
that case: a second receive never adds stock twice.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import update

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import PurchaseOrder, PurchaseOrderItem, Supplier, Transaction, Variant
from ..models.purchasing import PO_STATUS_CANCELLED, PO_STATUS_PENDING, PO_STATUS_RECEIVED
from ..models.sales import TXN_PURCHASE, TXN_PURCHASE_REFUND
from ..money import ZERO, quantize_money, sum_money, to_decimal
from ..time_utils import utcnow
from ..validation import (
    coerce_datetime,
    coerce_id,
    coerce_money,
    coerce_optional_id,
    coerce_positive_int,
    require_actor,
)
from .concurrency import run_in_transaction
from .sales_service import require_payment_method

logger = logging.getLogger(__name__)


def _coerce_item(value: Any) -> dict:
    get = value.get if isinstance(value, Mapping) else (lambda name: getattr(value, name, None))
    return {
        "variant_id": coerce_id(get("variant_id"), "variant_id"),
        "quantity": coerce_positive_int(get("quantity"), "quantity"),
        "unit_cost": coerce_money(get("unit_cost"), "unit_cost"),
    }


class PurchaseOrderService:
    def __init__(self, session, inventory, audit, *, retry_attempts: int = 3):
        self.session = session
        self.inventory = inventory
        self.audit = audit
        self.retry_attempts = retry_attempts

    def _run(self, func):
        return run_in_transaction(self.session, func, attempts=self.retry_attempts)

    def get_purchase_order(self, purchase_order_id: int) -> PurchaseOrder:
        order = self.session.get(PurchaseOrder, coerce_id(purchase_order_id, "purchase_order_id"))
        if order is None:
            raise NotFoundError(
                f"Purchase order {purchase_order_id} not found", details={"purchase_order_id": purchase_order_id}
            )
        return order

    def create_purchase_order(
        self,
        supplier_id: int,
        items: Iterable,
        *,
        user_id: int,
        paid_amount=ZERO,
        payment_method_id: int | None = None,
    ) -> PurchaseOrder:
        user_id = require_actor(user_id)
        supplier_id = coerce_id(supplier_id, "supplier_id")
        payment_method_id = coerce_optional_id(payment_method_id, "payment_method_id")
        paid_amount = coerce_money(paid_amount if paid_amount is not None else ZERO, "paid_amount")
        lines = [_coerce_item(item) for item in (items or [])]
        if not lines:
            raise ValidationError("A purchase order needs at least one line")

        variant_ids = [line["variant_id"] for line in lines]
        if len(set(variant_ids)) != len(variant_ids):
            raise ValidationError("Each variant may appear only once per purchase order")

        total = quantize_money(sum_money(line["unit_cost"] * line["quantity"] for line in lines))
        if paid_amount > total:
            raise ValidationError(
                "paid_amount exceeds purchase order total",
                details={"paid_amount": str(paid_amount), "total_amount": str(total)},
            )

        def _op():
            if self.session.get(Supplier, supplier_id) is None:
                raise NotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
            for variant_id in variant_ids:
                if self.session.get(Variant, variant_id) is None:
                    raise NotFoundError(f"Variant {variant_id} not found", details={"variant_id": variant_id})

            order = PurchaseOrder(
                supplier_id=supplier_id,
                status=PO_STATUS_PENDING,
                total_amount=total,
                paid_amount=paid_amount,
                created_by_user_id=user_id,
            )
            for line in lines:
                order.items.append(PurchaseOrderItem(**line))

            if paid_amount > 0:
                if payment_method_id is not None:
                    require_payment_method(self.session, payment_method_id)
                order.transactions.append(Transaction(
                    type=TXN_PURCHASE,
                    amount=paid_amount,
                    payment_method_id=payment_method_id,
                    user_id=user_id,
                    created_at=utcnow(),
                ))

            self.session.add(order)
            self.session.flush()
            return order

        order = self._run(_op)
        self.audit.record(user_id, "purchase_order.create", "purchase_order", order.id, after=order.to_dict())
        return order

    def _transition(self, purchase_order_id: int, target: str, values: dict) -> PurchaseOrder:
        """Move a pending order to ``target``; raises on missing or stale orders."""
        result = self.session.execute(
            update(PurchaseOrder)
            .where(PurchaseOrder.id == purchase_order_id, PurchaseOrder.status == PO_STATUS_PENDING)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        order = self.session.get(PurchaseOrder, purchase_order_id)
        if order is None:
            raise NotFoundError(
                f"Purchase order {purchase_order_id} not found", details={"purchase_order_id": purchase_order_id}
            )
        self.session.refresh(order)
        if result.rowcount == 0:
            raise ConflictError(
                f"Purchase order is {order.status}, not {PO_STATUS_PENDING}",
                details={"purchase_order_id": purchase_order_id, "status": order.status},
            )
        return order

    def receive_purchase_order(
        self,
        purchase_order_id: int,
        *,
        user_id: int,
        lot_number: str | None = None,
        expiry_date=None,
    ) -> PurchaseOrder:
        user_id = require_actor(user_id)
        purchase_order_id = coerce_id(purchase_order_id, "purchase_order_id")
        if not hasattr(expiry_date, "year"):
            expiry_at = coerce_datetime(expiry_date, "expiry_date")
            expiry_date = expiry_at.date() if expiry_at is not None else None

        def _op():
            order = self._transition(
                purchase_order_id,
                PO_STATUS_RECEIVED,
                {"received_at": utcnow(), "received_by_user_id": user_id},
            )
            for item in order.items:
                self.inventory.receive_stock(
                    item.variant_id,
                    item.quantity,
                    item.unit_cost,
                    lot_number=lot_number,
                    expiry_date=expiry_date,
                    purchase_order_item_id=item.id,
                    user_id=user_id,
                )
            return order

        order = self._run(_op)
        logger.info("Purchase order %s received (%d lines)", order.id, len(order.items))
        self.audit.record(
            user_id, "purchase_order.receive", "purchase_order", order.id,
            before={"status": PO_STATUS_PENDING}, after=order.to_dict(),
        )
        return order

    def cancel_purchase_order(self, purchase_order_id: int, *, user_id: int) -> PurchaseOrder:
        user_id = require_actor(user_id)
        purchase_order_id = coerce_id(purchase_order_id, "purchase_order_id")

        def _op():
            timestamp = utcnow()
            order = self._transition(
                purchase_order_id,
                PO_STATUS_CANCELLED,
                {"cancelled_at": timestamp, "cancelled_by_user_id": user_id},
            )
            paid = to_decimal(order.paid_amount)
            if paid > 0:
                method_id = next((t.payment_method_id for t in order.transactions if t.type == TXN_PURCHASE), None)
                order.transactions.append(Transaction(
                    type=TXN_PURCHASE_REFUND,
                    amount=-paid,
                    payment_method_id=method_id,
                    user_id=user_id,
                    note="Purchase order cancelled",
                    created_at=timestamp,
                ))
                order.paid_amount = ZERO
            self.session.flush()
            return order

        order = self._run(_op)
        self.audit.record(
            user_id, "purchase_order.cancel", "purchase_order", order.id,
            before={"status": PO_STATUS_PENDING}, after=order.to_dict(),
        )
        return order
