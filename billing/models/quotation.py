from __future__ import annotations
from pydantic import Field
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal

from .common import Document
from .line_item import LineItem

QuotationStatus = Literal["draft", "sent", "accepted", "rejected", "expired"]
QUOTATION_STATUSES = ("draft", "sent", "accepted", "rejected", "expired")
CONVERTIBLE_STATUSES = ("sent", "accepted")


class Quotation(Document):
    quotation_number: str
    title: str
    description: Optional[str] = None
    project_id: str

    line_items: List[LineItem] = Field(default_factory=list)
    net_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: str = "EUR"

    status: QuotationStatus = "draft"
    valid_until: Optional[date] = None
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    # mirror in the external accounting system
    external_accounting_id: Optional[str] = None
    external_status: Optional[str] = None
    synced_at: Optional[datetime] = None

    created_by: Optional[str] = None

    # helpers
    def is_expired(self, today: date) -> bool:
        return self.status == "sent" and self.valid_until is not None and self.valid_until < today

    def display_status(self, today: date) -> str:
        return "expired" if self.is_expired(today) else self.status

    def is_convertible(self, today: date) -> bool:
        return self.display_status(today) in CONVERTIBLE_STATUSES
