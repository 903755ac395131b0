from __future__ import annotations
import logging
from datetime import timedelta
from typing import NamedTuple, Optional

from billing.clock import Clock
from billing.config import Settings
from billing.errors import InvalidStateError, ValidationError
from billing.models.invoice import Invoice
from billing.models.quotation import Quotation
from billing.services.accounting_service import AccountingService
from billing.services.activity import record_activity
from billing.services.invoice_service import InvoiceService
from billing.services.quotation_service import QuotationService
from billing.storage.store import Store

logger = logging.getLogger(__name__)


class ConversionResult(NamedTuple):
    invoice: Invoice
    quotation: Quotation


class WorkflowService:
    def __init__(self, store: Store, clock: Optional[Clock] = None, settings: Optional[Settings] = None,
                 accounting: Optional[AccountingService] = None):
        self.store = store
        self.clock = clock or Clock()
        self.settings = settings or Settings()
        accounting = accounting or AccountingService(store, clock=self.clock)
        self.quotations = QuotationService(store, self.clock, self.settings, accounting)
        self.invoices = InvoiceService(store, self.clock, self.settings, accounting)

    def convert_quotation(self, quotation_id: str, *, set_accepted: bool = True,
                          created_by: Optional[str] = None) -> ConversionResult:
        """
        Materialise a draft invoice from a sent or accepted quotation.

        The invoice insert and the quotation's flip to `accepted` commit together
        or not at all. A quotation that is still sent/accepted afterwards can be
        converted again; that produces a second invoice.
        """
        with self.store.transaction():
            q = self.quotations.get_quotation(quotation_id)
            today = self.clock.today()
            if not q.is_convertible(today):
                raise InvalidStateError(
                    f"quotation {q.quotation_number} is {q.display_status(today)}; "
                    "only sent or accepted quotations can be converted",
                    details={"status": q.display_status(today)},
                )
            if not q.project_id:
                raise ValidationError(f"quotation {q.quotation_number} has no project")

            now = self.clock.now()
            inv = self.invoices.insert(Invoice(
                invoice_number="",
                title=q.title,
                description=q.description,
                project_id=q.project_id,
                line_items=q.line_items,
                amount=q.net_amount,
                tax_amount=q.tax_amount,
                total_amount=q.total_amount,
                currency=q.currency,
                status="draft",
                issue_date=today,
                due_date=today + timedelta(days=self.settings.quotation_payment_days),
                created_by=created_by,
                quotation_id=q.id,
                created_at=now, updated_at=now,
            ))

            if set_accepted and q.status != "accepted":
                version = q.version
                q.status = "accepted"
                q.accepted_at = now
                q.touch(now)
                q = Quotation.model_validate(self.store.quotations.update(q, expected_version=version))

            record_activity(self.store, self.clock, project_id=q.project_id, user_id=created_by,
                            action="quotation_converted", entity_type="quotation", entity_id=q.id,
                            quotation_number=q.quotation_number, invoice_id=inv.id,
                            invoice_number=inv.invoice_number)

        logger.info("Quotation %s converted into invoice %s", q.quotation_number, inv.invoice_number)
        return ConversionResult(inv, q)
