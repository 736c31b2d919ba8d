# Overview: Stock reservation, restock and receipt against variant stock levels.

"""
Inventory Ledger Invariants

- Variant.stock_quantity is the on-hand figure and never goes negative.
- Every change to stock_quantity appends exactly one StockFlow row in the
  same DB transaction, with the signed delta and the resulting balance.
- A decrement is a conditional UPDATE (stock_quantity >= qty). Zero affected
  rows means the stock was not there at write time: InsufficientStockError.
- Multi-line reservations check the aggregate quantity per variant for the
  whole cart before the first decrement. Partial reservation is never
  observable; a late failure still rolls back with the caller's transaction.

Methods other than adjust_stock do not commit. They run inside the
transaction of the operation that called them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Sequence

from sqlalchemy import update

from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..models import StockFlow, StockLot, Variant
from ..models.inventory import FLOW_ADJUSTMENT, FLOW_PURCHASE
from ..validation import coerce_int, coerce_money, coerce_positive_int, require_actor
from .concurrency import run_in_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockRequest:
    variant_id: int
    quantity: int
    reference_type: str | None = None
    reference_id: int | None = None


def _shortfall_details(shortfalls: list[dict]) -> dict:
    return {"items": shortfalls}


class InventoryLedger:
    def __init__(self, session, *, retry_attempts: int = 3):
        self.session = session
        self.retry_attempts = retry_attempts

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _get_variant(self, variant_id: int) -> Variant:
        variant = self.session.get(Variant, variant_id)
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found", details={"variant_id": variant_id})
        return variant

    def get_stock(self, variant_id: int) -> int:
        return int(self._get_variant(variant_id).stock_quantity or 0)

    def list_flows(self, variant_id: int, *, limit: int | None = None) -> list[StockFlow]:
        query = (
            self.session.query(StockFlow)
            .filter(StockFlow.variant_id == variant_id)
            .order_by(StockFlow.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def check_availability(self, requests: Iterable[StockRequest]) -> None:
        """
        Validate every variant's aggregate demand against current stock.

        Raises InsufficientStockError listing every short variant, or
        NotFoundError for the first unknown variant.
        """
        demand: dict[int, int] = {}
        for req in requests:
            demand[req.variant_id] = demand.get(req.variant_id, 0) + req.quantity

        shortfalls = []
        for variant_id in sorted(demand):
            variant = self._get_variant(variant_id)
            # Re-read inside the write transaction
            self.session.refresh(variant, attribute_names=["stock_quantity"])
            available = int(variant.stock_quantity or 0)
            if available < demand[variant_id]:
                shortfalls.append({
                    "variant_id": variant_id,
                    "sku": variant.sku,
                    "requested": demand[variant_id],
                    "available": available,
                })

        if shortfalls:
            raise InsufficientStockError("Insufficient stock", details=_shortfall_details(shortfalls))

    # -------------------------------------------------------------------------
    # Mutations (caller owns the transaction)
    # -------------------------------------------------------------------------

    def _append_flow(self, variant: Variant, event_type: str, delta: int, **kwargs) -> StockFlow:
        flow = StockFlow(
            variant_id=variant.id,
            event_type=event_type,
            quantity=delta,
            balance_after=variant.stock_quantity,
            **kwargs,
        )
        self.session.add(flow)
        return flow

    def reserve_stock(
        self,
        variant_id: int,
        quantity: int,
        *,
        event_type: str = "sale",
        reference_type: str | None = None,
        reference_id: int | None = None,
        user_id: int | None = None,
        note: str | None = None,
    ) -> StockFlow:
        quantity = coerce_positive_int(quantity, "quantity")
        variant = self._get_variant(variant_id)

        result = self.session.execute(
            update(Variant)
            .where(Variant.id == variant_id, Variant.stock_quantity >= quantity)
            .values(stock_quantity=Variant.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.refresh(variant, attribute_names=["stock_quantity"])
            raise InsufficientStockError(
                "Insufficient stock",
                details=_shortfall_details([{
                    "variant_id": variant_id,
                    "sku": variant.sku,
                    "requested": quantity,
                    "available": int(variant.stock_quantity or 0),
                }]),
            )

        self.session.refresh(variant, attribute_names=["stock_quantity"])
        return self._append_flow(
            variant,
            event_type,
            -quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            user_id=user_id,
            note=note,
        )

    def reserve_lines(
        self,
        requests: Sequence[StockRequest],
        *,
        event_type: str = "sale",
        user_id: int | None = None,
    ) -> list[StockFlow]:
        """All-or-nothing reservation for a cart."""
        self.check_availability(requests)
        return [
            self.reserve_stock(
                req.variant_id,
                req.quantity,
                event_type=event_type,
                reference_type=req.reference_type,
                reference_id=req.reference_id,
                user_id=user_id,
            )
            for req in requests
        ]

    def restore_stock(
        self,
        variant_id: int,
        quantity: int,
        reason: str,
        *,
        reference_type: str | None = None,
        reference_id: int | None = None,
        user_id: int | None = None,
        note: str | None = None,
    ) -> StockFlow:
        """Put units back on hand. Only fails when the variant is gone."""
        quantity = coerce_positive_int(quantity, "quantity")
        variant = self._get_variant(variant_id)

        self.session.execute(
            update(Variant)
            .where(Variant.id == variant_id)
            .values(stock_quantity=Variant.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(variant, attribute_names=["stock_quantity"])
        return self._append_flow(
            variant,
            reason,
            quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            user_id=user_id,
            note=note,
        )

    def receive_stock(
        self,
        variant_id: int,
        quantity: int,
        unit_cost,
        *,
        lot_number: str | None = None,
        expiry_date: date | None = None,
        purchase_order_item_id: int | None = None,
        user_id: int | None = None,
    ) -> StockLot:
        quantity = coerce_positive_int(quantity, "quantity")
        unit_cost = coerce_money(unit_cost, "unit_cost")
        self._get_variant(variant_id)

        lot = StockLot(
            variant_id=variant_id,
            quantity=quantity,
            unit_cost=unit_cost,
            purchase_order_item_id=purchase_order_item_id,
            lot_number=lot_number,
            expiry_date=expiry_date,
        )
        self.session.add(lot)
        self.session.flush()

        flow = self.restore_stock(
            variant_id,
            quantity,
            FLOW_PURCHASE,
            reference_type="purchase_order_item" if purchase_order_item_id else None,
            reference_id=purchase_order_item_id,
            user_id=user_id,
        )
        flow.lot_id = lot.id
        return lot

    # -------------------------------------------------------------------------
    # Standalone operation
    # -------------------------------------------------------------------------

    def adjust_stock(self, variant_id: int, quantity_delta: int, *, user_id: int, note: str | None = None) -> StockFlow:
        """
        Manual stock correction (count differences, damage).

        Commits on its own. A negative delta larger than on-hand stock is
        refused with InsufficientStockError.
        """
        user_id = require_actor(user_id)
        quantity_delta = coerce_int(quantity_delta, "quantity_delta")
        if quantity_delta == 0:
            raise ValidationError("quantity_delta must not be 0")

        def _op():
            if quantity_delta < 0:
                return self.reserve_stock(
                    variant_id, -quantity_delta, event_type=FLOW_ADJUSTMENT, user_id=user_id, note=note
                )
            return self.restore_stock(variant_id, quantity_delta, FLOW_ADJUSTMENT, user_id=user_id, note=note)

        flow = run_in_transaction(self.session, _op, attempts=self.retry_attempts)
        logger.info("Stock adjusted for variant %s by %s (balance %s)", variant_id, quantity_delta, flow.balance_after)
        return flow
