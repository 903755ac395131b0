from __future__ import annotations
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import ValidationError

from billing.clock import Clock
from billing.errors import ConflictError, ExternalServiceError
from billing.models.accounting import SyncLogEntry
from billing.models.invoice import Invoice
from billing.models.quotation import Quotation
from billing.models.report import StatusSyncReport, StatusSyncResult
from billing.services.accounting_client import (
    INVOICE_STATUS_MAP,
    QUOTATION_STATUS_MAP,
    AccountingClient,
    remote_status,
)
from billing.services.project_service import ProjectDirectory
from billing.storage.store import Store

logger = logging.getLogger(__name__)


class SyncResult(NamedTuple):
    external_id: Optional[str] = None
    warning: Optional[str] = None
    pushed: bool = False


class AccountingService:
    """
    Best-effort mirroring of quotations and invoices to the accounting system.
    Never raises: failures come back as a warning and a `failed` sync log row.
    """

    def __init__(self, store: Store, client: Optional[AccountingClient] = None, clock: Optional[Clock] = None):
        self.store = store
        self.repo = store.sync_log
        self.client = client
        self.clock = clock or Clock()
        self.projects = ProjectDirectory(store)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _address(self, project_id: str) -> Dict[str, Any]:
        p = self.projects.get(project_id)
        if p and p.accounting_contact_id:
            return {"contactId": p.accounting_contact_id}
        return {"name": p.name if p else "Kunde", "countryCode": "DE"}

    def _log(self, entity_type: str, entity_id: str, action: str, *,
             external_id: Optional[str] = None, error: Optional[str] = None,
             response_data: Optional[Dict[str, Any]] = None) -> SyncLogEntry:
        e = SyncLogEntry(
            at=self.clock.now(), entity_type=entity_type, entity_id=entity_id, action=action,
            status="failed" if error else "success", external_id=external_id, error_message=error,
            response_data=response_data or {},
        )
        self.repo.add(e)
        return e

    def _mark_synced(self, table: str, doc_id: str, external_id: str) -> None:
        self.store.tables[table].update({
            "id": doc_id,
            "external_accounting_id": external_id,
            "synced_at": self.clock.now(),
        })

    def sync_quotation(self, q: Quotation, *, finalize: bool = False, action: str = "create") -> SyncResult:
        if q.external_accounting_id:
            return SyncResult(external_id=q.external_accounting_id)
        if not self.enabled:
            return SyncResult()
        try:
            ext_id = self.client.push_quotation(q, self._address(q.project_id), finalize)
        except ExternalServiceError as e:
            logger.warning("Quotation %s not mirrored to accounting: %s", q.quotation_number, e.message)
            self._log("quotation", q.id, action, error=e.message)
            return SyncResult(warning=f"accounting sync failed: {e.message}")
        self._mark_synced("quotations", q.id, ext_id)
        self._log("quotation", q.id, action, external_id=ext_id)
        return SyncResult(external_id=ext_id, pushed=True)

    def sync_invoice(self, inv: Invoice, *, finalize: bool = False, action: str = "create") -> SyncResult:
        if inv.external_accounting_id:
            return SyncResult(external_id=inv.external_accounting_id)
        if not self.enabled:
            return SyncResult()
        try:
            ext_id = self.client.push_invoice(inv, self._address(inv.project_id), finalize)
        except ExternalServiceError as e:
            logger.warning("Invoice %s not mirrored to accounting: %s", inv.invoice_number, e.message)
            self._log("invoice", inv.id, action, error=e.message)
            return SyncResult(warning=f"accounting sync failed: {e.message}")
        self._mark_synced("invoices", inv.id, ext_id)
        self._log("invoice", inv.id, action, external_id=ext_id)
        return SyncResult(external_id=ext_id, pushed=True)

    def list_entries(self, entity_id: Optional[str] = None) -> List[SyncLogEntry]:
        rows = self.repo.find(entity_id=entity_id) if entity_id else self.repo.list_all()
        out: List[SyncLogEntry] = []
        for d in rows:
            try:
                out.append(SyncLogEntry(**d))
            except ValidationError:
                continue
        return out

    # ----- Statuts distants ----- #

    def pull_statuses(self) -> StatusSyncReport:
        """
        Take over status changes made in the accounting system.

        Only open mirrored documents are asked for: invoices in draft, sent or
        overdue, quotations in draft or sent. A paid or cancelled invoice is
        therefore never rewritten, and a remote `open` leaves a local `overdue`
        in place.
        """
        if not self.enabled:
            return StatusSyncReport(enabled=False)

        report = StatusSyncReport()
        for d in self.store.invoices.find(
            lambda r: bool(r.get("external_accounting_id")) and r.get("status") in OPEN_INVOICE_STATUSES,
            order_by="invoice_number",
        ):
            inv = Invoice.model_validate(d)
            report.invoices.append(self._pull(
                "invoice", inv, self.client.get_invoice, _invoice_target,
            ))
        for d in self.store.quotations.find(
            lambda r: bool(r.get("external_accounting_id")) and r.get("status") in OPEN_QUOTATION_STATUSES,
            order_by="quotation_number",
        ):
            q = Quotation.model_validate(d)
            report.quotations.append(self._pull(
                "quotation", q, self.client.get_quotation,
                lambda remote, cur: QUOTATION_STATUS_MAP.get(remote or "", cur),
            ))

        summary = report.summary()
        logger.info("Accounting status sync: %d/%d invoices, %d/%d quotations changed",
                    summary["invoices_changed"], summary["invoices_synced"],
                    summary["quotations_changed"], summary["quotations_synced"])
        return report

    def _pull(self, entity_type: str, doc, fetch, target) -> StatusSyncResult:
        ext_id = doc.external_accounting_id
        result = StatusSyncResult(entity_type=entity_type, entity_id=doc.id, old_status=doc.status)
        try:
            remote = remote_status(fetch(ext_id))
        except ExternalServiceError as e:
            logger.warning("Status of %s %s not pulled: %s", entity_type, doc.id, e.message)
            self._log(entity_type, doc.id, "status_sync", external_id=ext_id, error=e.message)
            result.error = e.message
            return result

        new_status = target(remote, doc.status)
        now = self.clock.now()
        changes: Dict[str, Any] = {"id": doc.id, "external_status": remote, "synced_at": now}
        if new_status != doc.status:
            changes["status"] = new_status
            stamp = STATUS_TIMESTAMPS.get(new_status)
            if stamp:
                changes[stamp] = now
        try:
            self.store.tables[f"{entity_type}s"].update(changes, expected_version=doc.version)
        except ConflictError as e:
            logger.warning("%s %s changed during status sync, skipped", entity_type, doc.id)
            result.error = e.message
            return result

        result.remote_status = remote
        result.new_status = new_status
        if new_status != doc.status:
            result.status_changed = True
            self._log(entity_type, doc.id, "status_sync", external_id=ext_id, response_data={
                "old_status": doc.status, "new_status": new_status, "remote_status": remote,
            })
        return result


OPEN_INVOICE_STATUSES = ("draft", "sent", "overdue")
OPEN_QUOTATION_STATUSES = ("draft", "sent")

# status -> timestamp stamped when a pulled status is taken over
STATUS_TIMESTAMPS = {
    "paid": "paid_at",
    "accepted": "accepted_at",
    "rejected": "rejected_at",
}


def _invoice_target(remote: Optional[str], current: str) -> str:
    """Local status for a remote voucher status. Unknown and `draft` answers keep the local one."""
    new = INVOICE_STATUS_MAP.get(remote or "")
    if new is None or new == "draft":
        return current
    if new == "sent" and current == "overdue":
        return current
    return new
