"""Recurring invoice definitions and the daily sweep that bills them."""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from billing.clock import Clock
from billing.config import Settings
from billing.errors import BillingError, NotFoundError, ValidationError
from billing.models.invoice import Invoice
from billing.models.line_item import compute_totals, validate_line_items
from billing.models.recurring import INTERVAL_TYPES, RecurringInvoice, RecurringInvoiceHistory
from billing.models.report import GenerationOutcome, GenerationReport
from billing.services.accounting_service import AccountingService
from billing.services.invoice_service import InvoiceService
from billing.services.notification_service import NotificationService
from billing.services.project_service import ProjectDirectory
from billing.storage.store import Store

logger = logging.getLogger(__name__)

_UNSET: Any = object()

MONTHS_PER_INTERVAL = {"monthly": 1, "quarterly": 3, "yearly": 12}


def add_months(current: date, months: int, anchor_day: Optional[int] = None) -> date:
    """`current` shifted by `months`, on `anchor_day` clamped to the month's last day."""
    index = current.year * 12 + (current.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day or current.day, last))


def compute_next_date(current: date, interval_type: str, interval_value: int,
                      anchor_day: Optional[int] = None) -> date:
    """
    Next occurrence after `current`.

    monthly adds `interval_value` months, quarterly three times as many,
    yearly `interval_value` years. The day of month is `anchor_day` (default:
    `current.day`) clamped to the target month, so Jan 31 + 1 month is the last
    day of February. Passing the schedule's start day as anchor keeps
    Jan 31 -> Feb 29 -> Mar 31 instead of drifting to the 29th.
    """
    if interval_type not in MONTHS_PER_INTERVAL:
        raise ValidationError(f"interval_type must be one of {INTERVAL_TYPES}")
    if int(interval_value) < 1:
        raise ValidationError("interval_value must be >= 1")
    return add_months(current, MONTHS_PER_INTERVAL[interval_type] * int(interval_value), anchor_day)


class RecurringInvoiceService:
    def __init__(
        self,
        store: Store,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        accounting: Optional[AccountingService] = None,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self.store = store
        self.repo = store.recurring_invoices
        self.history_repo = store.recurring_invoice_history
        self.clock = clock or Clock()
        self.settings = settings or Settings()
        self.accounting = accounting or AccountingService(store, clock=self.clock)
        self.notifier = notifier or NotificationService(store, clock=self.clock)
        self.invoices = InvoiceService(store, self.clock, self.settings, self.accounting)
        self.projects = ProjectDirectory(store)

    # ---------- lecture ---------- #

    def _hydrate(self, d: Dict[str, Any]) -> RecurringInvoice:
        return RecurringInvoice.model_validate(d)

    def get_recurring_invoice(self, recurring_id: str) -> RecurringInvoice:
        d = self.repo.get_by_id(recurring_id)
        if not d:
            raise NotFoundError(f"recurring invoice {recurring_id} not found")
        return self._hydrate(d)

    def list_recurring_invoices(self, project_id: Optional[str] = None,
                                active_only: bool = False) -> List[RecurringInvoice]:
        equals: Dict[str, Any] = {}
        if project_id:
            equals["project_id"] = project_id
        if active_only:
            equals["is_active"] = True
        out = [self._hydrate(d) for d in self.repo.find(**equals)]
        out.sort(key=lambda r: r.created_at, reverse=True)
        return out

    def history(self, recurring_id: str) -> List[RecurringInvoiceHistory]:
        rows = self.history_repo.find(recurring_invoice_id=recurring_id, order_by="due_date", reverse=True)
        return [RecurringInvoiceHistory.model_validate(d) for d in rows]

    # ---------- création / édition ---------- #

    def create_recurring_invoice(
        self,
        project_id: str,
        title: str,
        line_items: Sequence[Any],
        interval_type: str,
        start_date: date,
        *,
        interval_value: int = 1,
        end_date: Optional[date] = None,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        auto_send: bool = False,
        send_notification: bool = True,
        created_by: Optional[str] = None,
    ) -> RecurringInvoice:
        if not title or not title.strip():
            raise ValidationError("title is required")
        if interval_type not in INTERVAL_TYPES:
            raise ValidationError(f"interval_type must be one of {INTERVAL_TYPES}")
        if int(interval_value) < 1:
            raise ValidationError("interval_value must be >= 1")
        if start_date is None:
            raise ValidationError("start_date is required")
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        items = validate_line_items(line_items or [])
        if not items:
            raise ValidationError("at least one line item is required")
        self.projects.require(project_id)
        totals = compute_totals(items)

        # a start date in the past begins at the first occurrence from today on
        today = self.clock.today()
        next_date = start_date
        while next_date < today:
            next_date = compute_next_date(next_date, interval_type, interval_value, anchor_day=start_date.day)

        now = self.clock.now()
        rec = RecurringInvoice(
            title=title.strip(),
            description=(description or "").strip() or None,
            project_id=project_id,
            line_items=items,
            net_amount=totals.net, tax_amount=totals.tax, total_amount=totals.total,
            tax_rate=items[0].tax_rate,
            currency=currency or self.settings.currency,
            interval_type=interval_type,
            interval_value=int(interval_value),
            start_date=start_date,
            end_date=end_date,
            next_invoice_date=next_date,
            is_active=True,
            auto_send=auto_send,
            send_notification=send_notification,
            created_by=created_by,
            created_at=now, updated_at=now,
        )
        rec = self._hydrate(self.repo.add(rec))
        logger.info("Recurring invoice %s (%s x%d) starts %s", rec.id, interval_type, rec.interval_value, next_date)
        return rec

    def update_recurring_invoice(
        self,
        recurring_id: str,
        *,
        title: Any = _UNSET,
        description: Any = _UNSET,
        end_date: Any = _UNSET,
        auto_send: Any = _UNSET,
        send_notification: Any = _UNSET,
        is_active: Any = _UNSET,
        expected_version: Optional[int] = None,
    ) -> RecurringInvoice:
        with self.store.transaction():
            rec = self.get_recurring_invoice(recurring_id)
            version = rec.version if expected_version is None else expected_version
            if title is not _UNSET:
                if not title or not str(title).strip():
                    raise ValidationError("title is required")
                rec.title = str(title).strip()
            if description is not _UNSET:
                rec.description = (description or "").strip() or None
            if end_date is not _UNSET:
                if end_date is not None and end_date < rec.start_date:
                    raise ValidationError("end_date must not be before start_date")
                rec.end_date = end_date
            if auto_send is not _UNSET:
                rec.auto_send = bool(auto_send)
            if send_notification is not _UNSET:
                rec.send_notification = bool(send_notification)
            if is_active is not _UNSET:
                rec.is_active = bool(is_active)
            rec.touch(self.clock.now())
            return self._hydrate(self.repo.update(rec, expected_version=version))

    def toggle_active(self, recurring_id: str) -> RecurringInvoice:
        """Pause or resume. `next_invoice_date` is left as is."""
        with self.store.transaction():
            rec = self.get_recurring_invoice(recurring_id)
            rec.is_active = not rec.is_active
            rec.touch(self.clock.now())
            rec = self._hydrate(self.repo.update(rec, expected_version=rec.version))
        logger.info("Recurring invoice %s %s", rec.id, "resumed" if rec.is_active else "paused")
        return rec

    def delete_recurring_invoice(self, recurring_id: str) -> bool:
        with self.store.transaction():
            self.get_recurring_invoice(recurring_id)
            self.history_repo.delete_where(lambda r: r.get("recurring_invoice_id") == recurring_id)
            return self.repo.delete(recurring_id)

    # ---------- sweep ---------- #

    def due_recurrences(self, as_of: date) -> List[RecurringInvoice]:
        out: List[RecurringInvoice] = []
        for d in self.repo.find(is_active=True):
            try:
                rec = self._hydrate(d)
            except PydanticValidationError:
                logger.warning("Skipping unreadable recurring invoice row %s", d.get("id"))
                continue
            if rec.next_invoice_date <= as_of:
                out.append(rec)
        out.sort(key=lambda r: (r.next_invoice_date, r.id))
        return out

    def run_due_recurrences(self, as_of: Optional[date] = None) -> GenerationReport:
        """
        Bill every active definition whose next date is due on `as_of`.

        Each definition is handled on its own; one failing never stops the
        others. Running again for the same `as_of` generates nothing new.

        A definition with an `end_date` is skipped once `next_invoice_date` is
        past it or `end_date` is before `as_of`. The second rule also drops an
        occurrence due on or before `end_date` when the sweep missed its day
        and only runs after `end_date`: the schedule is treated as over.
        """
        as_of = as_of or self.clock.today()
        report = GenerationReport(as_of=as_of)
        for rec in self.due_recurrences(as_of):
            try:
                outcome = self._process(rec.id, as_of)
            except BillingError as e:
                logger.error("Recurring invoice %s failed: %s", rec.id, e.message)
                outcome = GenerationOutcome(recurring_id=rec.id, status="failed",
                                            due_date=rec.next_invoice_date, error=e.message)
            except Exception as e:  # one bad row must not abort the sweep
                logger.exception("Recurring invoice %s failed", rec.id)
                outcome = GenerationOutcome(recurring_id=rec.id, status="failed",
                                            due_date=rec.next_invoice_date, error=str(e) or type(e).__name__)
            report.outcomes.append(outcome)
        logger.info("Sweep %s: %d generated, %d failed, %d processed",
                    as_of, report.generated_count, report.fail_count, len(report.outcomes))
        return report

    def _process(self, recurring_id: str, as_of: date) -> GenerationOutcome:
        with self.store.transaction():
            rec = self.get_recurring_invoice(recurring_id)
            due = rec.next_invoice_date
            if not rec.is_active or due > as_of:
                return GenerationOutcome(recurring_id=rec.id, status="skipped", due_date=due,
                                         error="no longer due")
            if rec.past_end(as_of):
                return GenerationOutcome(recurring_id=rec.id, status="skipped", due_date=due,
                                         error="end date reached")

            if self.history_repo.find_one(recurring_invoice_id=rec.id, due_date=due.isoformat()):
                # occurrence billed but schedule not advanced: only move the date
                inv = None
            else:
                inv = self._generate(rec, due, as_of)

            version = rec.version
            anchor = rec.start_date.day
            next_date = compute_next_date(due, rec.interval_type, rec.interval_value, anchor_day=anchor)
            while next_date <= as_of:
                # missed occurrences are not back-filled
                next_date = compute_next_date(next_date, rec.interval_type, rec.interval_value, anchor_day=anchor)
            now = self.clock.now()
            rec.next_invoice_date = next_date
            if inv is not None:
                rec.invoices_generated += 1
                rec.last_generated_at = now
            rec.touch(now)
            rec = self._hydrate(self.repo.update(rec, expected_version=version))

        if inv is None:
            return GenerationOutcome(recurring_id=rec.id, status="skipped", due_date=due,
                                     error="occurrence already billed")

        logger.info("Recurring invoice %s: generated %s for %s, next %s",
                    rec.id, inv.invoice_number, due, rec.next_invoice_date)
        outcome = GenerationOutcome(recurring_id=rec.id, status="generated", due_date=due,
                                    invoice_id=inv.id, invoice_number=inv.invoice_number)
        self._after_commit(rec, inv, outcome)
        return outcome

    def _generate(self, rec: RecurringInvoice, due: date, as_of: date) -> Invoice:
        now = self.clock.now()
        inv = self.invoices.insert(Invoice(
            invoice_number="",
            title=rec.title,
            description=rec.description,
            project_id=rec.project_id,
            line_items=rec.line_items,
            amount=rec.net_amount,
            tax_amount=rec.tax_amount,
            total_amount=rec.total_amount,
            currency=rec.currency,
            status="sent" if rec.auto_send else "draft",
            issue_date=as_of,
            due_date=as_of + timedelta(days=self.settings.recurring_payment_days),
            created_by=rec.created_by,
            recurring_invoice_id=rec.id,
            generation_key=rec.generation_key(due),
            created_at=now, updated_at=now,
        ))
        self.history_repo.add(RecurringInvoiceHistory(
            recurring_invoice_id=rec.id, due_date=due, invoice_id=inv.id, generated_at=now,
        ))
        return inv

    def _after_commit(self, rec: RecurringInvoice, inv: Invoice, outcome: GenerationOutcome) -> None:
        """Accounting push and notification. The invoice is committed: errors only become warnings."""
        if rec.auto_send:
            try:
                res = self.accounting.sync_invoice(inv, finalize=True, action="create_from_recurring")
            except Exception as e:
                logger.exception("Accounting push of %s failed", inv.invoice_number)
                outcome.warnings.append(f"accounting sync failed: {e}")
            else:
                if res.warning:
                    outcome.warnings.append(res.warning)
        if rec.send_notification:
            try:
                self._notify(rec, inv)
            except Exception as e:
                logger.exception("Notification for %s failed", inv.invoice_number)
                outcome.warnings.append(f"notification failed: {e}")

    def _notify(self, rec: RecurringInvoice, inv: Invoice) -> None:
        project_name = self.projects.name_of(rec.project_id)
        self.notifier.notify("recurring_invoice_created", {
            "project_id": rec.project_id,
            "project_name": project_name,
            "invoice_id": inv.id,
            "recurring_invoice_id": rec.id,
            "invoice_number": inv.invoice_number,
            "invoice_title": inv.title,
            "total_amount": f"{inv.total_amount} {inv.currency}",
            "due_date": inv.due_date.strftime("%d.%m.%Y") if inv.due_date else "",
            "dashboard_url": f"{self.settings.app_base_url.rstrip('/')}/dashboard/invoices/{inv.id}",
        })
