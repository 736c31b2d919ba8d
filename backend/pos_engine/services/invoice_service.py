# Overview: Invoice number allocation for sales.

from __future__ import annotations

import re

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..models import InvoiceSequence, Sale
from ..validation import coerce_positive_int


class InvoiceNumberer:
    """
    Allocates ``PREFIX-NNN`` invoice numbers.

    Zero-padded to ``pad`` digits; once the counter outgrows the padding the
    number simply gets longer (INV-999, INV-1000). Each allocated number is
    strictly greater than every number already issued for the prefix.

    Allocation happens inside the caller's transaction, so a rolled-back sale
    also gives its number back.
    """

    def __init__(self, session, *, prefix: str = "INV", pad: int = 3):
        self.session = session
        self.prefix = prefix
        self.pad = coerce_positive_int(pad, "pad")
        self._pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")

    def format_invoice_number(self, number: int) -> str:
        return f"{self.prefix}-{number:0{self.pad}d}"

    def parse_invoice_number(self, invoice_number: str | None) -> int | None:
        """Numeric suffix of an invoice number with this prefix, else None."""
        if not invoice_number:
            return None
        match = self._pattern.match(invoice_number.strip())
        return int(match.group(1)) if match else None

    def _last_issued_on_sales(self) -> int:
        highest = 0
        rows = (
            self.session.query(Sale.invoice_number)
            .filter(Sale.invoice_number.like(f"{self.prefix}-%"))
            .order_by(func.length(Sale.invoice_number).desc(), Sale.invoice_number.desc())
            .limit(20)
            .all()
        )
        for (invoice_number,) in rows:
            number = self.parse_invoice_number(invoice_number)
            if number is not None and number > highest:
                highest = number
        return highest

    def _last_issued(self) -> int:
        stored = (
            self.session.query(InvoiceSequence.last_number)
            .filter(InvoiceSequence.prefix == self.prefix)
            .scalar()
        )
        return max(stored or 0, self._last_issued_on_sales())

    def peek_next_invoice_number(self) -> str:
        """What the next allocation would return right now. Allocates nothing."""
        return self.format_invoice_number(self._last_issued() + 1)

    def next_invoice_number(self) -> str:
        stmt = (
            update(InvoiceSequence)
            .where(InvoiceSequence.prefix == self.prefix)
            .values(last_number=InvoiceSequence.last_number + 1)
            .execution_options(synchronize_session=False)
        )

        result = self.session.execute(stmt)
        if not result.rowcount:
            # First allocation for this prefix: seed from existing sales
            seed = self._last_issued_on_sales()
            try:
                with self.session.begin_nested():
                    self.session.add(InvoiceSequence(prefix=self.prefix, last_number=seed + 1))
                return self.format_invoice_number(seed + 1)
            except IntegrityError:
                result = self.session.execute(stmt)
                if not result.rowcount:
                    raise

        current = (
            self.session.query(InvoiceSequence.last_number)
            .filter(InvoiceSequence.prefix == self.prefix)
            .scalar()
        )
        floor = self._last_issued_on_sales()
        if current <= floor:
            # Sales were imported with higher numbers than the sequence knows
            current = floor + 1
            self.session.execute(
                update(InvoiceSequence)
                .where(InvoiceSequence.prefix == self.prefix)
                .values(last_number=current)
                .execution_options(synchronize_session=False)
            )
        return self.format_invoice_number(current)
