"""Client for the external accounting system (Lexoffice-style REST API)."""

from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime, time as dtime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Protocol

import requests

from billing.config import AccountingSettings
from billing.errors import ExternalServiceError
from billing.models.invoice import Invoice
from billing.models.line_item import LineItem
from billing.models.quotation import Quotation

logger = logging.getLogger(__name__)


class AccountingClient(Protocol):
    def push_quotation(self, quotation: Quotation, address: Dict[str, Any], finalize: bool = False) -> str: ...

    def push_invoice(self, invoice: Invoice, address: Dict[str, Any], finalize: bool = False) -> str: ...

    def get_invoice(self, external_id: str) -> Dict[str, Any]: ...

    def get_quotation(self, external_id: str) -> Dict[str, Any]: ...


# ---------- Payloads ---------- #

def _voucher_date(d: date | datetime) -> str:
    if not isinstance(d, datetime):
        d = datetime.combine(d, dtime.min, tzinfo=timezone.utc)
    return d.isoformat(timespec="milliseconds")


def _tax_type(rate: int) -> str:
    return "vatfree" if rate == 0 else "net"


def line_item_payload(item: LineItem, currency: str) -> Dict[str, Any]:
    return {
        "type": "service",
        "name": item.name,
        "description": item.description,
        "quantity": float(item.quantity),
        "unitName": item.unit_name,
        "unitPrice": {
            "currency": currency,
            "netAmount": float(item.unit_price),
            "taxRatePercentage": item.tax_rate,
        },
    }


def _lines(items: Iterable[LineItem], currency: str):
    return [line_item_payload(it, currency) for it in items]


def quotation_payload(q: Quotation, address: Dict[str, Any], voucher_date: date) -> Dict[str, Any]:
    rate = q.line_items[0].tax_rate if q.line_items else 19
    payload: Dict[str, Any] = {
        "voucherDate": _voucher_date(voucher_date),
        "address": address,
        "lineItems": _lines(q.line_items, q.currency),
        "totalPrice": {"currency": q.currency},
        "taxConditions": {"taxType": _tax_type(rate)},
        "title": q.title or None,
        "introduction": q.description,
    }
    if q.valid_until:
        payload["expirationDate"] = _voucher_date(q.valid_until)
    return payload


def effective_tax_rate(tax_amount: Decimal, net_amount: Decimal) -> int:
    if not tax_amount or not net_amount:
        return 0
    rate = tax_amount / net_amount * 100
    if 18 <= rate <= 20:
        return 19
    if 6 <= rate <= 8:
        return 7
    return 0


def invoice_payload(inv: Invoice, address: Dict[str, Any]) -> Dict[str, Any]:
    rate = effective_tax_rate(inv.tax_amount, inv.amount)
    payload: Dict[str, Any] = {
        "voucherDate": _voucher_date(inv.issue_date),
        "address": address,
        "lineItems": _lines(inv.line_items, inv.currency),
        "totalPrice": {"currency": inv.currency},
        "taxConditions": {"taxType": _tax_type(rate)},
        "title": inv.title or None,
        "introduction": inv.description,
    }
    if inv.due_date:
        payload["paymentConditions"] = {"paymentTermDuration": (inv.due_date - inv.issue_date).days}
    return payload


# ---------- Statuts ---------- #

# remote voucherStatus -> local invoice status
INVOICE_STATUS_MAP = {
    "draft": "draft",
    "open": "sent",
    "paidoff": "paid",
    "voided": "cancelled",
}

# only final answers of the customer are taken over for quotations
QUOTATION_STATUS_MAP = {
    "accepted": "accepted",
    "rejected": "rejected",
}


def remote_status(document: Dict[str, Any]) -> Optional[str]:
    status = document.get("voucherStatus")
    return status if isinstance(status, str) else None


# ---------- Client HTTP ---------- #

class RateLimiter:
    """Keeps at least `min_interval` seconds between two requests."""

    def __init__(self, min_interval: float) -> None:
        self.min_interval = max(0.0, min_interval)
        self._last = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            delay = self.min_interval - (time.monotonic() - self._last)
            if delay > 0:
                time.sleep(delay)
            self._last = time.monotonic()


class HttpAccountingClient:
    def __init__(self, settings: AccountingSettings, *, session: Optional[requests.Session] = None) -> None:
        if not settings.api_key:
            raise ValueError("accounting api_key is required")
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self.http = session or requests
        self.limiter = RateLimiter(settings.min_request_interval)

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        self.limiter.wait()
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Accept": "application/json",
        }
        try:
            resp = self.http.request(method, f"{self.base_url}{endpoint}", headers=headers,
                                     timeout=self.settings.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Accounting API %s %s failed: %s", method, endpoint, e)
            raise ExternalServiceError(f"accounting API unreachable: {e}") from e

        if not resp.ok:
            try:
                data = resp.json()
            except ValueError:
                data = None
            message = (data or {}).get("message") or f"accounting API error {resp.status_code}"
            logger.warning("Accounting API %s %s -> %s: %s", method, endpoint, resp.status_code, data)
            raise ExternalServiceError(message, status=resp.status_code, details={"response": data})

        if resp.status_code == 204:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            logger.warning("Accounting API %s %s -> %s: body is not JSON", method, endpoint, resp.status_code)
            raise ExternalServiceError(f"accounting API returned an unreadable body for {endpoint}",
                                       status=resp.status_code) from e
        if not isinstance(data, dict):
            raise ExternalServiceError(f"accounting API returned an unexpected body for {endpoint}",
                                       status=resp.status_code, details={"response": data})
        return data

    def _create(self, endpoint: str, payload: Dict[str, Any], finalize: bool) -> str:
        params = {"finalize": "true"} if finalize else None
        data = self._request("POST", endpoint, json=payload, params=params)
        ext_id = data.get("id")
        if not ext_id or not isinstance(ext_id, str):
            raise ExternalServiceError(f"accounting API returned no id for {endpoint}", details={"response": data})
        return ext_id

    def push_quotation(self, quotation: Quotation, address: Dict[str, Any], finalize: bool = False) -> str:
        voucher = (quotation.sent_at or quotation.created_at).date()
        return self._create("/v1/quotations", quotation_payload(quotation, address, voucher), finalize)

    def push_invoice(self, invoice: Invoice, address: Dict[str, Any], finalize: bool = False) -> str:
        return self._create("/v1/invoices", invoice_payload(invoice, address), finalize)

    def get_invoice(self, external_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/invoices/{external_id}")

    def get_quotation(self, external_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/quotations/{external_id}")
