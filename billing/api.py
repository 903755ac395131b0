"""HTTP entry points of the billing core (FastAPI)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing.clock import Clock
from billing.config import Settings, load_settings
from billing.errors import BillingError
from billing.models.invoice import Invoice
from billing.models.quotation import Quotation
from billing.models.recurring import RecurringInvoice
from billing.services.accounting_client import AccountingClient
from billing.storage.store import Store
from billing.wiring import Services

logger = logging.getLogger(__name__)


# --- Corps de requête ---

class QuotationCreate(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    valid_until: Optional[date] = None
    quotation_number: Optional[str] = None
    currency: Optional[str] = None
    send: bool = False
    sync_to_accounting: bool = False
    created_by: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str
    expected_version: Optional[int] = None


class QuotationUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    valid_until: Optional[date] = None
    status: Optional[str] = None
    expected_version: Optional[int] = None


class ConvertRequest(BaseModel):
    set_accepted: bool = True
    created_by: Optional[str] = None


class InvoiceCreate(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None
    invoice_number: Optional[str] = None
    line_items: Optional[List[Dict[str, Any]]] = None
    amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str = "draft"
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    created_by: Optional[str] = None
    sync_to_accounting: bool = False
    finalize_in_accounting: bool = False


class InvoiceUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[date] = None
    line_items: Optional[List[Dict[str, Any]]] = None
    expected_version: Optional[int] = None


class RecurringCreate(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    interval_type: str
    interval_value: int = 1
    start_date: date
    end_date: Optional[date] = None
    currency: Optional[str] = None
    auto_send: bool = False
    send_notification: bool = True
    created_by: Optional[str] = None


class RecurringUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    end_date: Optional[date] = None
    auto_send: Optional[bool] = None
    send_notification: Optional[bool] = None
    is_active: Optional[bool] = None
    expected_version: Optional[int] = None


# --- Sérialisation ---

def get_services(request: Request) -> Services:
    return request.app.state.services


def _quotation_out(svc: Services, q: Quotation) -> Dict[str, Any]:
    out = q.model_dump(mode="json")
    out["display_status"] = svc.quotations.display_status(q)
    out["project"] = svc.projects.get_project(q.project_id) if svc.projects.get(q.project_id) else None
    return out


def _invoice_out(svc: Services, inv: Invoice) -> Dict[str, Any]:
    out = inv.model_dump(mode="json")
    out["display_status"] = svc.invoices.display_status(inv)
    out["is_overdue"] = svc.invoices.is_overdue(inv)
    return out


def _recurring_out(rec: RecurringInvoice) -> Dict[str, Any]:
    return rec.model_dump(mode="json")


# --- Devis ---

quotations = APIRouter(prefix="/api/quotations", tags=["quotations"])


@quotations.get("")
def list_quotations(project_id: Optional[str] = None, status: Optional[str] = None,
                    svc: Services = Depends(get_services)):
    items = svc.quotations.list_quotations(project_id=project_id, status=status)
    return {"quotations": [_quotation_out(svc, q) for q in items]}


@quotations.post("", status_code=status.HTTP_201_CREATED)
def create_quotation(body: QuotationCreate, svc: Services = Depends(get_services)):
    res = svc.quotations.create_quotation(
        body.project_id, body.title, body.line_items,
        description=body.description, valid_until=body.valid_until,
        quotation_number=body.quotation_number, currency=body.currency,
        send=body.send, created_by=body.created_by, sync_to_accounting=body.sync_to_accounting,
    )
    return {"quotation": _quotation_out(svc, res.quotation), "warnings": res.warnings,
            "accounting_synced": bool(res.quotation.external_accounting_id)}


@quotations.get("/{quotation_id}")
def get_quotation(quotation_id: str, svc: Services = Depends(get_services)):
    return {"quotation": _quotation_out(svc, svc.quotations.get_quotation(quotation_id))}


@quotations.patch("/{quotation_id}")
def update_quotation(quotation_id: str, body: QuotationUpdate, svc: Services = Depends(get_services)):
    fields = body.model_dump(exclude_unset=True)
    expected = fields.pop("expected_version", None)
    new_status = fields.pop("status", None)
    q = svc.quotations.get_quotation(quotation_id)
    warnings: List[str] = []
    if fields:
        q = svc.quotations.update_quotation(quotation_id, expected_version=expected, **fields)
        expected = q.version if expected is not None else None
    if new_status and new_status != q.status:
        res = svc.quotations.update_status(quotation_id, new_status, expected_version=expected)
        q, warnings = res.quotation, res.warnings
    return {"quotation": _quotation_out(svc, q), "warnings": warnings}


@quotations.patch("/{quotation_id}/status")
def update_quotation_status(quotation_id: str, body: StatusUpdate, svc: Services = Depends(get_services)):
    res = svc.quotations.update_status(quotation_id, body.status, expected_version=body.expected_version)
    return {"quotation": _quotation_out(svc, res.quotation), "warnings": res.warnings}


@quotations.post("/{quotation_id}/send")
def send_quotation(quotation_id: str, svc: Services = Depends(get_services)):
    res = svc.quotations.send_quotation(quotation_id)
    return {"quotation": _quotation_out(svc, res.quotation), "warnings": res.warnings}


@quotations.post("/{quotation_id}/sync")
def sync_quotation(quotation_id: str, svc: Services = Depends(get_services)):
    res = svc.quotations.sync_quotation(quotation_id)
    return {"quotation": _quotation_out(svc, res.quotation), "warnings": res.warnings}


@quotations.post("/{quotation_id}/convert")
def convert_quotation(quotation_id: str, body: Optional[ConvertRequest] = None,
                      svc: Services = Depends(get_services)):
    body = body or ConvertRequest()
    res = svc.workflow.convert_quotation(quotation_id, set_accepted=body.set_accepted, created_by=body.created_by)
    return {
        "success": True,
        "invoice": _invoice_out(svc, res.invoice),
        "quotation": _quotation_out(svc, res.quotation),
        "message": f"quotation converted into invoice {res.invoice.invoice_number}",
    }


@quotations.delete("/{quotation_id}")
def delete_quotation(quotation_id: str, svc: Services = Depends(get_services)):
    return {"success": svc.quotations.delete_quotation(quotation_id)}


# --- Factures ---

invoices = APIRouter(prefix="/api/invoices", tags=["invoices"])


@invoices.get("")
def list_invoices(project_id: Optional[str] = None, status: Optional[str] = None, overdue: bool = False,
                  svc: Services = Depends(get_services)):
    items = svc.invoices.list_invoices(project_id=project_id, status=status, overdue_only=overdue)
    return {"invoices": [_invoice_out(svc, i) for i in items]}


@invoices.post("", status_code=status.HTTP_201_CREATED)
def create_invoice(body: InvoiceCreate, svc: Services = Depends(get_services)):
    res = svc.invoices.create_invoice(
        body.project_id, body.title,
        line_items=body.line_items, amount=body.amount, tax_amount=body.tax_amount,
        total_amount=body.total_amount, invoice_number=body.invoice_number,
        description=body.description, status=body.status, issue_date=body.issue_date,
        due_date=body.due_date, currency=body.currency, created_by=body.created_by,
        sync_to_accounting=body.sync_to_accounting, finalize_in_accounting=body.finalize_in_accounting,
    )
    return {"invoice": _invoice_out(svc, res.invoice), "warnings": res.warnings}


@invoices.get("/{invoice_id}")
def get_invoice(invoice_id: str, svc: Services = Depends(get_services)):
    return {"invoice": _invoice_out(svc, svc.invoices.get_invoice(invoice_id))}


@invoices.patch("/{invoice_id}")
def update_invoice(invoice_id: str, body: InvoiceUpdate, svc: Services = Depends(get_services)):
    fields = body.model_dump(exclude_unset=True)
    expected = fields.pop("expected_version", None)
    inv = svc.invoices.update_invoice(invoice_id, expected_version=expected, **fields)
    return {"invoice": _invoice_out(svc, inv)}


@invoices.delete("/{invoice_id}")
def delete_invoice(invoice_id: str, svc: Services = Depends(get_services)):
    return {"success": svc.invoices.delete_invoice(invoice_id)}


# --- Factures récurrentes ---

recurring = APIRouter(prefix="/api/recurring-invoices", tags=["recurring"])


@recurring.get("")
def list_recurring(project_id: Optional[str] = None, active: bool = False,
                   svc: Services = Depends(get_services)):
    items = svc.recurring.list_recurring_invoices(project_id=project_id, active_only=active)
    return {"recurring_invoices": [_recurring_out(r) for r in items]}


@recurring.post("", status_code=status.HTTP_201_CREATED)
def create_recurring(body: RecurringCreate, svc: Services = Depends(get_services)):
    rec = svc.recurring.create_recurring_invoice(
        body.project_id, body.title, body.line_items, body.interval_type, body.start_date,
        interval_value=body.interval_value, end_date=body.end_date, description=body.description,
        currency=body.currency, auto_send=body.auto_send, send_notification=body.send_notification,
        created_by=body.created_by,
    )
    return {"recurring_invoice": _recurring_out(rec)}


@recurring.get("/{recurring_id}")
def get_recurring(recurring_id: str, svc: Services = Depends(get_services)):
    rec = svc.recurring.get_recurring_invoice(recurring_id)
    return {
        "recurring_invoice": _recurring_out(rec),
        "history": [h.model_dump(mode="json") for h in svc.recurring.history(recurring_id)],
    }


@recurring.patch("/{recurring_id}")
def update_recurring(recurring_id: str, body: RecurringUpdate, svc: Services = Depends(get_services)):
    fields = body.model_dump(exclude_unset=True)
    expected = fields.pop("expected_version", None)
    rec = svc.recurring.update_recurring_invoice(recurring_id, expected_version=expected, **fields)
    return {"recurring_invoice": _recurring_out(rec)}


@recurring.post("/{recurring_id}/toggle")
def toggle_recurring(recurring_id: str, svc: Services = Depends(get_services)):
    return {"recurring_invoice": _recurring_out(svc.recurring.toggle_active(recurring_id))}


@recurring.delete("/{recurring_id}")
def delete_recurring(recurring_id: str, svc: Services = Depends(get_services)):
    return {"success": svc.recurring.delete_recurring_invoice(recurring_id)}


# --- Cron ---

cron = APIRouter(prefix="/api/cron", tags=["cron"])


def require_cron_secret(request: Request, authorization: Optional[str] = Header(None)) -> None:
    secret = get_services(request).settings.cron_secret
    provided = (authorization or "").removeprefix("Bearer ").strip()
    if secret and provided != secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@cron.get("/generate-recurring-invoices", dependencies=[Depends(require_cron_secret)])
def generate_recurring_invoices(as_of: Optional[date] = None, svc: Services = Depends(get_services)):
    report = svc.recurring.run_due_recurrences(as_of)
    out = report.summary()
    out["message"] = f"{report.generated_count} invoice(s) generated, {report.fail_count} failed"
    return out


@cron.get("/promote-overdue-invoices", dependencies=[Depends(require_cron_secret)])
def promote_overdue_invoices(as_of: Optional[date] = None, svc: Services = Depends(get_services)):
    promoted = svc.invoices.promote_overdue(as_of)
    return {"promoted": [i.invoice_number for i in promoted]}


@cron.get("/sync-accounting", dependencies=[Depends(require_cron_secret)])
def sync_accounting(svc: Services = Depends(get_services)):
    report = svc.accounting.pull_statuses()
    out = report.summary()
    out["message"] = (f"{out['invoices_changed']} invoice(s), {out['quotations_changed']} quotation(s) updated"
                      if report.enabled else "accounting sync disabled")
    return out


# --- Application ---

async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code,
                        content={"error": exc.message, "type": type(exc).__name__, "details": exc.details})


def create_app(settings: Optional[Settings] = None, *, store: Optional[Store] = None, clock: Optional[Clock] = None,
               accounting_client: Optional[AccountingClient] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Billing API ready (data dir: %s)", app.state.services.store.data_dir or "memory")
        yield

    settings = settings or load_settings()
    app = FastAPI(title="billing", lifespan=lifespan)
    app.state.services = Services(settings, store=store, clock=clock, accounting_client=accounting_client)
    app.add_exception_handler(BillingError, billing_error_handler)
    for router in (quotations, invoices, recurring, cron):
        app.include_router(router)
    return app
