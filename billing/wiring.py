from __future__ import annotations
from typing import Optional

from billing.clock import Clock
from billing.config import Settings
from billing.services.accounting_client import AccountingClient, HttpAccountingClient
from billing.services.accounting_service import AccountingService
from billing.services.invoice_service import InvoiceService
from billing.services.notification_service import NotificationService
from billing.services.project_service import ProjectDirectory
from billing.services.quotation_service import QuotationService
from billing.services.recurring_service import RecurringInvoiceService
from billing.services.workflow_service import WorkflowService
from billing.storage.store import Store


class Services:
    """All services over one store, one clock and one accounting client."""

    def __init__(self, settings: Settings, store: Optional[Store] = None, clock: Optional[Clock] = None,
                 accounting_client: Optional[AccountingClient] = None):
        self.settings = settings
        self.store = store or Store(settings.data_dir)
        self.clock = clock or Clock()
        if accounting_client is None and settings.accounting.usable:
            accounting_client = HttpAccountingClient(settings.accounting)
        self.accounting = AccountingService(self.store, accounting_client, self.clock)
        self.notifications = NotificationService(self.store, self.clock)
        self.projects = ProjectDirectory(self.store)
        self.quotations = QuotationService(self.store, self.clock, settings, self.accounting)
        self.invoices = InvoiceService(self.store, self.clock, settings, self.accounting)
        self.workflow = WorkflowService(self.store, self.clock, settings, self.accounting)
        self.recurring = RecurringInvoiceService(self.store, self.clock, settings, self.accounting,
                                                 self.notifications)
