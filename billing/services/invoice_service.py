# billing/services/invoice_service.py
from __future__ import annotations
import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from billing.clock import Clock
from billing.config import Settings
from billing.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from billing.models.common import round_money
from billing.models.invoice import INVOICE_STATUSES, Invoice, display_status, is_overdue
from billing.models.line_item import compute_totals, validate_line_items
from billing.services.accounting_service import AccountingService
from billing.services.activity import record_activity
from billing.services.project_service import ProjectDirectory
from billing.storage.store import Store

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class InvoiceResult(NamedTuple):
    invoice: Invoice
    warnings: List[str]


def _money(value: Any, field: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{field} is not a number") from e
    if not d.is_finite():
        raise ValidationError(f"{field} is not a number")
    return round_money(d)


class InvoiceService:
    def __init__(self, store: Store, clock: Optional[Clock] = None, settings: Optional[Settings] = None,
                 accounting: Optional[AccountingService] = None):
        self.store = store
        self.repo = store.invoices
        self.clock = clock or Clock()
        self.settings = settings or Settings()
        self.accounting = accounting or AccountingService(store, clock=self.clock)
        self.projects = ProjectDirectory(store)

    # ----------- lecture -----------
    def _hydrate(self, d: Dict[str, Any]) -> Invoice:
        return Invoice.model_validate(d)

    def get_invoice(self, invoice_id: str) -> Invoice:
        d = self.repo.get_by_id(invoice_id)
        if not d:
            raise NotFoundError(f"invoice {invoice_id} not found")
        return self._hydrate(d)

    def list_invoices(self, project_id: Optional[str] = None, status: Optional[str] = None,
                      overdue_only: bool = False, today: Optional[date] = None) -> List[Invoice]:
        """Newest first. `status` and `overdue_only` filter on the display status."""
        today = today or self.clock.today()
        rows = self.repo.find(project_id=project_id) if project_id else self.repo.list_all()
        out: List[Invoice] = []
        for d in rows:
            try:
                inv = self._hydrate(d)
            except PydanticValidationError:
                logger.warning("Skipping unreadable invoice row %s", d.get("id"))
                continue
            if overdue_only and not is_overdue(inv, today):
                continue
            if status and display_status(inv, today) != status:
                continue
            out.append(inv)
        out.sort(key=lambda i: i.created_at, reverse=True)
        return out

    def display_status(self, inv: Invoice, today: Optional[date] = None) -> str:
        return display_status(inv, today or self.clock.today())

    def is_overdue(self, inv: Invoice, today: Optional[date] = None) -> bool:
        return is_overdue(inv, today or self.clock.today())

    # ----------- numérotation -----------
    def next_invoice_number(self, year: Optional[int] = None) -> str:
        year = year or self.clock.today().year
        prefix = f"{self.settings.invoice_prefix}-{year}-"
        max_n = 0
        for d in self.repo.list_all():
            num = d.get("invoice_number") or ""
            m = re.fullmatch(re.escape(prefix) + r"(\d+)", num)
            if m:
                max_n = max(max_n, int(m.group(1)))
        return f"{prefix}{max_n + 1:04d}"

    def _number_pattern(self) -> re.Pattern:
        return re.compile(re.escape(self.settings.invoice_prefix) + r"-\d{4}-\d+")

    def _check_number_free(self, number: str) -> None:
        if self.repo.find_one(invoice_number=number):
            raise ConflictError(f"invoice number {number} already exists")

    # ----------- création -----------
    def insert(self, inv: Invoice) -> Invoice:
        """Store a prepared invoice, allocating its number when empty."""
        with self.store.transaction():
            if not inv.invoice_number:
                inv.invoice_number = self.next_invoice_number(inv.issue_date.year)
            self._check_number_free(inv.invoice_number)
            return self._hydrate(self.repo.add(inv))

    def create_invoice(
        self,
        project_id: str,
        title: str,
        *,
        line_items: Optional[Sequence[Any]] = None,
        amount: Any = None,
        tax_amount: Any = None,
        total_amount: Any = None,
        invoice_number: Optional[str] = None,
        description: Optional[str] = None,
        status: str = "draft",
        issue_date: Optional[date] = None,
        due_date: Optional[date] = None,
        currency: Optional[str] = None,
        created_by: Optional[str] = None,
        sync_to_accounting: bool = False,
        finalize_in_accounting: bool = False,
    ) -> InvoiceResult:
        if not title or not title.strip():
            raise ValidationError("title is required")
        if status not in INVOICE_STATUSES:
            raise ValidationError(f"unknown invoice status {status!r}")
        self.projects.require(project_id)

        items = validate_line_items(line_items or [])
        if items:
            totals = compute_totals(items)
            net, tax, total = totals.net, totals.tax, totals.total
        elif amount is not None:
            net = _money(amount, "amount")
            tax = _money(tax_amount or 0, "tax_amount")
            if net < 0 or tax < 0:
                raise ValidationError("amount and tax_amount must be >= 0")
            total = net + tax
            if total_amount is not None and _money(total_amount, "total_amount") != total:
                raise ValidationError(f"total_amount must equal amount + tax_amount ({total})")
        else:
            raise ValidationError("either line_items or amount is required")

        invoice_number = (invoice_number or "").strip()
        if invoice_number and not self._number_pattern().fullmatch(invoice_number):
            raise ValidationError(f"invoice number must look like {self.settings.invoice_prefix}-<year>-<seq>")

        issue = issue_date or self.clock.today()
        if due_date is not None and due_date < issue:
            raise ValidationError("due_date must not be before issue_date")

        now = self.clock.now()
        inv = Invoice(
            invoice_number=invoice_number or "",
            title=title.strip(),
            description=(description or "").strip() or None,
            project_id=project_id,
            line_items=items,
            amount=net, tax_amount=tax, total_amount=total,
            currency=currency or self.settings.currency,
            status=status,
            issue_date=issue,
            due_date=due_date,
            paid_at=now if status == "paid" else None,
            created_by=created_by,
            created_at=now, updated_at=now,
        )
        with self.store.transaction():
            inv = self.insert(inv)
            record_activity(self.store, self.clock, project_id=project_id, user_id=created_by,
                            action="invoice_created", entity_type="invoice", entity_id=inv.id,
                            invoice_number=inv.invoice_number, total_amount=str(inv.total_amount))
        logger.info("Invoice %s created (%s %s)", inv.invoice_number, inv.total_amount, inv.currency)

        warnings: List[str] = []
        if sync_to_accounting and inv.line_items:
            res = self.accounting.sync_invoice(inv, finalize=finalize_in_accounting)
            if res.warning:
                warnings.append(res.warning)
            if res.pushed:
                inv = self.get_invoice(inv.id)
        return InvoiceResult(inv, warnings)

    # ----------- mise à jour -----------
    def update_invoice(
        self,
        invoice_id: str,
        *,
        title: Any = _UNSET,
        description: Any = _UNSET,
        status: Any = _UNSET,
        due_date: Any = _UNSET,
        line_items: Any = _UNSET,
        expected_version: Optional[int] = None,
    ) -> Invoice:
        with self.store.transaction():
            inv = self.get_invoice(invoice_id)
            version = inv.version if expected_version is None else expected_version
            now = self.clock.now()
            if title is not _UNSET:
                if not title or not str(title).strip():
                    raise ValidationError("title is required")
                inv.title = str(title).strip()
            if description is not _UNSET:
                inv.description = (description or "").strip() or None
            if due_date is not _UNSET:
                inv.due_date = due_date
            if line_items is not _UNSET:
                items = validate_line_items(line_items or [])
                if not items:
                    raise ValidationError("line_items must not be empty")
                totals = compute_totals(items)
                inv.line_items = items
                inv.amount, inv.tax_amount, inv.total_amount = totals.net, totals.tax, totals.total
            if status is not _UNSET and status != inv.status:
                if status not in INVOICE_STATUSES:
                    raise ValidationError(f"unknown invoice status {status!r}")
                inv.status = status
                if status == "paid":
                    inv.paid_at = now
            inv.touch(now)
            return self._hydrate(self.repo.update(inv, expected_version=version))

    def mark_paid(self, invoice_id: str) -> Invoice:
        return self.update_invoice(invoice_id, status="paid")

    def promote_overdue(self, as_of: Optional[date] = None) -> List[Invoice]:
        """Batch job: store `overdue` on sent invoices that the overdue rule flags."""
        as_of = as_of or self.clock.today()
        promoted: List[Invoice] = []
        for inv in self.list_invoices(today=as_of):
            if inv.status != "sent" or not is_overdue(inv, as_of):
                continue
            try:
                with self.store.transaction():
                    inv.status = "overdue"
                    inv.touch(self.clock.now())
                    promoted.append(self._hydrate(self.repo.update(inv, expected_version=inv.version)))
            except ConflictError:
                logger.warning("Invoice %s changed during overdue promotion, skipped", inv.invoice_number)
        if promoted:
            logger.info("%d invoice(s) promoted to overdue", len(promoted))
        return promoted

    def delete_invoice(self, invoice_id: str) -> bool:
        with self.store.transaction():
            inv = self.get_invoice(invoice_id)
            if inv.status != "draft":
                raise InvalidStateError("only draft invoices can be deleted")
            if inv.external_accounting_id:
                raise InvalidStateError("invoice is mirrored in accounting and cannot be deleted")
            return self.repo.delete(invoice_id)
