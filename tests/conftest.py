from datetime import date
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest

from billing.clock import FixedClock
from billing.config import AccountingSettings, Settings
from billing.errors import ExternalServiceError
from billing.models.project import Project, Recipient
from billing.services.accounting_client import HttpAccountingClient
from billing.storage.store import Store
from billing.wiring import Services


class FakeAccountingClient:
    """Records pushes; `fail = True` makes every push raise."""

    def __init__(self) -> None:
        self.fail = False
        self.calls: List[Dict[str, Any]] = []
        self.remote: Dict[str, str] = {}  # external id -> voucherStatus
        self._seq = 0

    def _push(self, kind: str, doc, address, finalize) -> str:
        self.calls.append({"kind": kind, "id": doc.id, "address": address, "finalize": finalize})
        if self.fail:
            raise ExternalServiceError("accounting down", status=503)
        self._seq += 1
        return f"ext-{kind}-{self._seq}"

    def push_quotation(self, quotation, address, finalize=False) -> str:
        return self._push("quotation", quotation, address, finalize)

    def push_invoice(self, invoice, address, finalize=False) -> str:
        return self._push("invoice", invoice, address, finalize)

    def _get(self, external_id) -> Dict[str, Any]:
        if self.fail:
            raise ExternalServiceError("accounting down", status=503)
        return {"id": external_id, "voucherStatus": self.remote.get(external_id, "open")}

    def get_invoice(self, external_id) -> Dict[str, Any]:
        return self._get(external_id)

    def get_quotation(self, external_id) -> Dict[str, Any]:
        return self._get(external_id)


@pytest.fixture
def clock():
    return FixedClock(date(2024, 1, 1))


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path, cron_secret="s3cret", app_base_url="https://dash.example.com")


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def project(store):
    p = Project(
        id="proj-1",
        name="Website Relaunch",
        recipients=[Recipient(email="anna@example.com", name="Anna"), Recipient(email="ops@example.com")],
    )
    store.projects.add(p)
    return p


@pytest.fixture
def accounting_client():
    return FakeAccountingClient()


@pytest.fixture
def services(settings, store, clock, accounting_client, project):
    return Services(settings, store=store, clock=clock, accounting_client=accounting_client)


@pytest.fixture
def item():
    return {"name": "Hosting", "quantity": "1", "unit_price": "100.00", "tax_rate": 19}


@pytest.fixture
def garbled_http_client():
    """HTTP accounting client whose API answers 200 with a body that is not JSON."""
    resp = MagicMock()
    resp.status_code = 200
    resp.ok = True
    resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    session = MagicMock()
    session.request.return_value = resp
    return HttpAccountingClient(AccountingSettings(enabled=True, api_key="k", min_request_interval=0),
                                session=session)
