from datetime import date
from decimal import Decimal

import pytest

from billing.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from billing.services.activity import activity_for
from billing.wiring import Services


def test_create_draft(services, item):
    res = services.quotations.create_quotation("proj-1", "Relaunch", [item, {**item, "name": "Setup"}])
    q = res.quotation
    assert q.quotation_number == "ANG-2024-0001"
    assert q.status == "draft"
    assert q.sent_at is None
    assert (q.net_amount, q.tax_amount, q.total_amount) == (Decimal("200.00"), Decimal("38.00"), Decimal("238.00"))
    assert res.warnings == []
    assert services.store.sync_log.count() == 0


def test_numbers_increase(services, item):
    services.quotations.create_quotation("proj-1", "A", [item])
    q = services.quotations.create_quotation("proj-1", "B", [item]).quotation
    assert q.quotation_number == "ANG-2024-0002"


def test_duplicate_number_conflicts(services, item):
    services.quotations.create_quotation("proj-1", "A", [item], quotation_number="ANG-X")
    with pytest.raises(ConflictError):
        services.quotations.create_quotation("proj-1", "B", [item], quotation_number="ANG-X")


def test_create_requires_items_title_and_project(services, item):
    with pytest.raises(ValidationError):
        services.quotations.create_quotation("proj-1", "A", [])
    with pytest.raises(ValidationError):
        services.quotations.create_quotation("proj-1", " ", [item])
    with pytest.raises(NotFoundError):
        services.quotations.create_quotation("nope", "A", [item])
    assert services.store.quotations.count() == 0


def test_create_and_send_pushes_to_accounting(services, accounting_client, item):
    res = services.quotations.create_quotation("proj-1", "A", [item], send=True)
    q = res.quotation
    assert q.status == "sent"
    assert q.sent_at == services.clock.now()
    assert q.external_accounting_id == "ext-quotation-1"
    assert accounting_client.calls[0]["finalize"] is True
    assert accounting_client.calls[0]["address"] == {"name": "Website Relaunch", "countryCode": "DE"}
    [log] = services.accounting.list_entries(q.id)
    assert log.status == "success" and log.action == "finalize"


def test_accounting_failure_is_a_warning(services, accounting_client, item):
    accounting_client.fail = True
    res = services.quotations.create_quotation("proj-1", "A", [item], send=True)
    assert res.quotation.status == "sent"
    assert res.quotation.external_accounting_id is None
    assert res.warnings and "accounting down" in res.warnings[0]
    [log] = services.accounting.list_entries(res.quotation.id)
    assert log.status == "failed"

    # retry on its own once the API is back
    accounting_client.fail = False
    retry = services.quotations.sync_quotation(res.quotation.id)
    assert retry.warnings == []
    assert retry.quotation.external_accounting_id == "ext-quotation-1"


def test_sync_is_idempotent(services, accounting_client, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], send=True).quotation
    again = services.quotations.sync_quotation(q.id).quotation
    assert again.external_accounting_id == q.external_accounting_id
    assert len(accounting_client.calls) == 1


def test_status_transitions_stamp_timestamps(services, clock, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    q = services.quotations.send_quotation(q.id).quotation
    assert q.status == "sent" and q.sent_at is not None

    clock.advance(days=2)
    q = services.quotations.accept(q.id).quotation
    assert q.status == "accepted"
    assert q.accepted_at == clock.now()

    clock.advance(days=1)
    q = services.quotations.reject(q.id).quotation
    assert q.status == "rejected"
    assert q.rejected_at == clock.now()
    assert q.accepted_at is not None


def test_same_status_twice_is_rejected(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    services.quotations.accept(q.id)
    with pytest.raises(InvalidStateError):
        services.quotations.accept(q.id)


def test_unknown_status(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    with pytest.raises(ValidationError):
        services.quotations.update_status(q.id, "archived")


def test_only_drafts_can_be_sent(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], send=True).quotation
    with pytest.raises(InvalidStateError):
        services.quotations.send_quotation(q.id)


def test_stale_version_conflicts(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    services.quotations.update_status(q.id, "accepted", expected_version=q.version)
    with pytest.raises(ConflictError):
        services.quotations.update_status(q.id, "rejected", expected_version=q.version)
    assert services.quotations.get_quotation(q.id).status == "accepted"


def test_expired_is_derived(services, clock, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], send=True,
                                             valid_until=date(2024, 1, 10)).quotation
    assert services.quotations.display_status(q) == "sent"

    clock.set(date(2024, 1, 11))
    q = services.quotations.get_quotation(q.id)
    assert q.status == "sent"
    assert services.quotations.display_status(q) == "expired"
    assert [x.id for x in services.quotations.list_quotations(status="expired")] == [q.id]
    assert services.quotations.list_quotations(status="sent") == []


def test_accepted_quotation_never_expires(services, clock, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], valid_until=date(2024, 1, 10)).quotation
    services.quotations.accept(q.id)
    clock.set(date(2024, 3, 1))
    assert services.quotations.display_status(services.quotations.get_quotation(q.id)) == "accepted"


def test_delete_records_activity(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    assert services.quotations.delete_quotation(q.id) is True
    with pytest.raises(NotFoundError):
        services.quotations.get_quotation(q.id)
    [entry] = activity_for(services.store, q.id)
    assert entry["action"] == "quotation_deleted"


def test_only_drafts_can_be_deleted(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    services.quotations.update_status(q.id, "rejected")
    with pytest.raises(InvalidStateError):
        services.quotations.delete_quotation(q.id)
    assert services.quotations.get_quotation(q.id).status == "rejected"


def test_mirrored_draft_cannot_be_deleted(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], sync_to_accounting=True).quotation
    assert q.status == "draft" and q.external_accounting_id
    with pytest.raises(InvalidStateError):
        services.quotations.delete_quotation(q.id)
    assert services.store.quotations.count() == 1


def test_update_texts_and_validity(services, clock, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], valid_until=date(2024, 1, 10)).quotation
    clock.set(date(2024, 1, 15))
    q = services.quotations.update_quotation(q.id, title="  Relaunch v2 ", description="",
                                             valid_until=date(2024, 2, 15), expected_version=q.version)
    assert q.title == "Relaunch v2"
    assert q.description is None
    assert q.valid_until == date(2024, 2, 15)
    assert q.updated_at == clock.now()
    assert q.total_amount == Decimal("119.00")

    with pytest.raises(ValidationError):
        services.quotations.update_quotation(q.id, title=" ")


def test_update_stale_version_conflicts(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation
    services.quotations.update_quotation(q.id, title="B", expected_version=q.version)
    with pytest.raises(ConflictError):
        services.quotations.update_quotation(q.id, title="C", expected_version=q.version)
    assert services.quotations.get_quotation(q.id).title == "B"


def test_mirrored_quotation_cannot_be_edited(services, item):
    q = services.quotations.create_quotation("proj-1", "A", [item], send=True).quotation
    with pytest.raises(InvalidStateError):
        services.quotations.update_quotation(q.id, title="B")
    assert services.quotations.get_quotation(q.id).title == "A"


def test_unreadable_accounting_answer_is_a_warning(settings, store, clock, project, garbled_http_client, item):
    services = Services(settings, store=store, clock=clock, accounting_client=garbled_http_client)
    q = services.quotations.create_quotation("proj-1", "A", [item]).quotation

    res = services.quotations.update_status(q.id, "sent")
    assert res.quotation.status == "sent"
    assert res.quotation.external_accounting_id is None
    assert res.warnings and "unreadable body" in res.warnings[0]
    assert services.quotations.get_quotation(q.id).status == "sent"
    [log] = services.accounting.list_entries(q.id)
    assert log.status == "failed"


def test_extending_validity_lifts_expiry(services, accounting_client, clock, item):
    accounting_client.fail = True
    q = services.quotations.create_quotation("proj-1", "A", [item], send=True,
                                             valid_until=date(2024, 1, 10)).quotation
    assert q.external_accounting_id is None
    clock.set(date(2024, 1, 15))
    assert services.quotations.display_status(q) == "expired"

    q = services.quotations.update_quotation(q.id, valid_until=date(2024, 2, 15))
    assert q.status == "sent"
    assert services.quotations.display_status(q) == "sent"
