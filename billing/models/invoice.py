from __future__ import annotations
from pydantic import Field
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal

from .common import Document
from .line_item import LineItem

InvoiceStatus = Literal["draft", "sent", "paid", "overdue", "cancelled"]
INVOICE_STATUSES = ("draft", "sent", "paid", "overdue", "cancelled")
SETTLED_STATUSES = ("paid", "cancelled")


class Invoice(Document):
    invoice_number: str
    title: str
    description: Optional[str] = None
    project_id: str

    line_items: List[LineItem] = Field(default_factory=list)
    amount: Decimal = Decimal("0")  # net
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: str = "EUR"

    status: InvoiceStatus = "draft"
    issue_date: date
    due_date: Optional[date] = None
    paid_at: Optional[datetime] = None
    created_by: Optional[str] = None

    # origin
    quotation_id: Optional[str] = None
    recurring_invoice_id: Optional[str] = None
    generation_key: Optional[str] = None

    external_accounting_id: Optional[str] = None
    external_status: Optional[str] = None
    synced_at: Optional[datetime] = None


def is_overdue(invoice: Invoice, today: date) -> bool:
    """The one overdue rule, used for display, filters and the promotion job."""
    return (
        invoice.due_date is not None
        and invoice.due_date < today
        and invoice.status not in SETTLED_STATUSES
    )


def display_status(invoice: Invoice, today: date) -> str:
    return "overdue" if is_overdue(invoice, today) else invoice.status
