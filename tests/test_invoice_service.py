from datetime import date
from decimal import Decimal

import pytest

from billing.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from billing.models.invoice import Invoice, is_overdue


def _inv(status, due):
    return Invoice(invoice_number="RE-1", title="t", project_id="p", status=status,
                   issue_date=date(2024, 1, 1), due_date=due)


@pytest.mark.parametrize("status, due, expected", [
    ("paid", date(2024, 1, 10), False),
    ("cancelled", date(2024, 1, 10), False),
    ("sent", date(2024, 1, 10), True),
    ("draft", date(2024, 1, 10), True),
    ("sent", date(2024, 1, 20), False),
    ("sent", date(2024, 1, 15), False),
    ("sent", None, False),
])
def test_is_overdue(status, due, expected):
    assert is_overdue(_inv(status, due), date(2024, 1, 15)) is expected


def test_create_from_line_items(services, item):
    res = services.invoices.create_invoice("proj-1", "Hosting Januar", line_items=[item],
                                           due_date=date(2024, 1, 31))
    inv = res.invoice
    assert inv.invoice_number == "RE-2024-0001"
    assert (inv.amount, inv.tax_amount, inv.total_amount) == (Decimal("100.00"), Decimal("19.00"), Decimal("119.00"))
    assert inv.issue_date == date(2024, 1, 1)
    assert services.store.activity_log.count(entity_id=inv.id, action="invoice_created") == 1


def test_create_from_amounts(services):
    inv = services.invoices.create_invoice("proj-1", "Pauschale", amount="500", tax_amount="95").invoice
    assert inv.total_amount == Decimal("595.00")
    assert inv.line_items == []


def test_create_requires_items_or_amount(services):
    with pytest.raises(ValidationError):
        services.invoices.create_invoice("proj-1", "Leer")
    with pytest.raises(ValidationError):
        services.invoices.create_invoice("proj-1", "X", amount="abc")


def test_due_date_before_issue_date(services, item):
    with pytest.raises(ValidationError):
        services.invoices.create_invoice("proj-1", "X", line_items=[item], due_date=date(2023, 12, 1))


def test_duplicate_number(services, item):
    services.invoices.create_invoice("proj-1", "A", line_items=[item], invoice_number="RE-2024-0042")
    with pytest.raises(ConflictError):
        services.invoices.create_invoice("proj-1", "B", line_items=[item], invoice_number="RE-2024-0042")
    # numbering continues after the highest sequence of the year
    assert services.invoices.next_invoice_number(2024) == "RE-2024-0043"
    assert services.invoices.next_invoice_number(2025) == "RE-2025-0001"


def test_sync_on_create(services, accounting_client, item):
    res = services.invoices.create_invoice("proj-1", "A", line_items=[item], sync_to_accounting=True)
    assert res.invoice.external_accounting_id == "ext-invoice-1"
    assert accounting_client.calls[0]["finalize"] is False


def test_marking_paid_stamps_paid_at(services, clock, item):
    inv = services.invoices.create_invoice("proj-1", "A", line_items=[item], status="sent",
                                           due_date=date(2024, 1, 10)).invoice
    clock.set(date(2024, 1, 20))
    assert services.invoices.is_overdue(inv)
    paid = services.invoices.mark_paid(inv.id)
    assert paid.status == "paid"
    assert paid.paid_at == clock.now()
    assert not services.invoices.is_overdue(paid)
    assert services.invoices.display_status(paid) == "paid"


def test_update_line_items_recomputes_totals(services, item):
    inv = services.invoices.create_invoice("proj-1", "A", line_items=[item]).invoice
    inv = services.invoices.update_invoice(inv.id, line_items=[{**item, "quantity": "3"}])
    assert inv.total_amount == Decimal("357.00")
    with pytest.raises(ValidationError):
        services.invoices.update_invoice(inv.id, status="lost")


def test_update_with_stale_version(services, item):
    inv = services.invoices.create_invoice("proj-1", "A", line_items=[item]).invoice
    services.invoices.update_invoice(inv.id, title="B", expected_version=inv.version)
    with pytest.raises(ConflictError):
        services.invoices.update_invoice(inv.id, title="C", expected_version=inv.version)
    assert services.invoices.get_invoice(inv.id).title == "B"


def test_overdue_filter_and_promotion(services, clock, item):
    late = services.invoices.create_invoice("proj-1", "late", line_items=[item], status="sent",
                                            due_date=date(2024, 1, 10)).invoice
    paid = services.invoices.create_invoice("proj-1", "paid", line_items=[item], status="paid",
                                            due_date=date(2024, 1, 10)).invoice
    services.invoices.create_invoice("proj-1", "future", line_items=[item], status="sent",
                                     due_date=date(2024, 3, 1))
    clock.set(date(2024, 1, 15))

    assert [i.id for i in services.invoices.list_invoices(overdue_only=True)] == [late.id]
    assert [i.id for i in services.invoices.list_invoices(status="overdue")] == [late.id]

    promoted = services.invoices.promote_overdue()
    assert [i.id for i in promoted] == [late.id]
    assert services.invoices.get_invoice(late.id).status == "overdue"
    assert services.invoices.get_invoice(paid.id).status == "paid"
    assert services.invoices.promote_overdue() == []


def test_delete_only_unsynced_drafts(services, item):
    draft = services.invoices.create_invoice("proj-1", "A", line_items=[item]).invoice
    sent = services.invoices.create_invoice("proj-1", "B", line_items=[item], status="sent").invoice
    synced = services.invoices.create_invoice("proj-1", "C", line_items=[item], sync_to_accounting=True).invoice

    with pytest.raises(InvalidStateError):
        services.invoices.delete_invoice(sent.id)
    with pytest.raises(InvalidStateError):
        services.invoices.delete_invoice(synced.id)
    assert services.invoices.delete_invoice(draft.id) is True
    with pytest.raises(NotFoundError):
        services.invoices.get_invoice(draft.id)


@pytest.mark.parametrize("kw", [
    {"amount": "-10", "tax_amount": "0"},
    {"amount": "100", "tax_amount": "-19"},
    {"amount": "100", "tax_amount": "19", "total_amount": "120"},
])
def test_manual_amounts_are_checked(services, kw):
    with pytest.raises(ValidationError):
        services.invoices.create_invoice("proj-1", "Pauschale", **kw)
    assert services.store.invoices.count() == 0


def test_manual_total_matching_is_accepted(services):
    inv = services.invoices.create_invoice("proj-1", "Pauschale", amount="100", tax_amount="19",
                                           total_amount="119.00").invoice
    assert inv.total_amount == Decimal("119.00")


@pytest.mark.parametrize("number", ["INV-1", "RE-24-1", "RE-2024-", "re-2024-0001", "RE-2024-0001x"])
def test_explicit_number_must_follow_the_scheme(services, item, number):
    with pytest.raises(ValidationError):
        services.invoices.create_invoice("proj-1", "A", line_items=[item], invoice_number=number)
    assert services.store.invoices.count() == 0
