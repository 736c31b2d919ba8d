# Overview: Composition root wiring engine components to one session.

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .audit_service import AuditLogger, AuditSink
from .inventory_service import InventoryLedger
from .invoice_service import InvoiceNumberer
from .purchase_service import PurchaseOrderService
from .return_service import ReturnService
from .sales_service import SaleOrchestrator
from .tax_service import TaxRuleService


@dataclass
class Engine:
    """Every engine component, sharing one session and one audit sink."""
    session: object
    audit: AuditLogger
    inventory: InventoryLedger
    taxes: TaxRuleService
    invoices: InvoiceNumberer
    sales: SaleOrchestrator
    returns: ReturnService
    purchasing: PurchaseOrderService


def build_engine(session=None, *, audit_sink: AuditSink | None = None, config: Mapping | None = None) -> Engine:
    """
    Wire the components together.

    ``session`` defaults to Flask-SQLAlchemy's scoped session and ``config``
    to the current app's config; both need an app context in that case.
    """
    if session is None or config is None:
        from flask import current_app
        from ..extensions import db

        session = session if session is not None else db.session
        config = config if config is not None else current_app.config

    attempts = int(config.get("POS_RETRY_ATTEMPTS", 3))
    audit = AuditLogger(audit_sink)
    inventory = InventoryLedger(session, retry_attempts=attempts)
    taxes = TaxRuleService(session, retry_attempts=attempts)
    invoices = InvoiceNumberer(
        session,
        prefix=config.get("POS_INVOICE_PREFIX", "INV"),
        pad=int(config.get("POS_INVOICE_PAD", 3)),
    )
    return Engine(
        session=session,
        audit=audit,
        inventory=inventory,
        taxes=taxes,
        invoices=invoices,
        sales=SaleOrchestrator(session, inventory, taxes, invoices, audit, retry_attempts=attempts),
        returns=ReturnService(session, inventory, audit, retry_attempts=attempts),
        purchasing=PurchaseOrderService(session, inventory, audit, retry_attempts=attempts),
    )


__all__ = [
    "Engine",
    "build_engine",
    "AuditLogger",
    "InventoryLedger",
    "InvoiceNumberer",
    "PurchaseOrderService",
    "ReturnService",
    "SaleOrchestrator",
    "TaxRuleService",
]
