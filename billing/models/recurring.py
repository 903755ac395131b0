from __future__ import annotations
from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal

from billing.clock import utcnow
from .common import Document, gen_id
from .line_item import LineItem

IntervalType = Literal["monthly", "quarterly", "yearly"]
INTERVAL_TYPES = ("monthly", "quarterly", "yearly")


class RecurringInvoice(Document):
    title: str
    description: Optional[str] = None
    project_id: str

    line_items: List[LineItem] = Field(default_factory=list)
    net_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    tax_rate: int = 19
    currency: str = "EUR"

    interval_type: IntervalType = "monthly"
    interval_value: int = 1
    start_date: date
    end_date: Optional[date] = None
    next_invoice_date: date

    is_active: bool = True
    invoices_generated: int = 0
    last_generated_at: Optional[datetime] = None

    auto_send: bool = False
    send_notification: bool = True
    created_by: Optional[str] = None

    def generation_key(self, due: Optional[date] = None) -> str:
        return f"{self.id}:{(due or self.next_invoice_date).isoformat()}"

    def past_end(self, as_of: date) -> bool:
        if self.end_date is None:
            return False
        return self.next_invoice_date > self.end_date or self.end_date < as_of


class RecurringInvoiceHistory(BaseModel):
    """One row per fulfilled occurrence; (recurring_invoice_id, due_date) is unique."""

    id: str = Field(default_factory=gen_id)
    recurring_invoice_id: str
    due_date: date
    invoice_id: str
    generated_at: datetime = Field(default_factory=utcnow)
