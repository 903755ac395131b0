import json
from datetime import date
from decimal import Decimal

import pytest

from billing.errors import ConflictError, NotFoundError
from billing.models.project import Project
from billing.storage.repo import JsonRepository
from billing.storage.store import Store


def test_rows_persist_to_json(tmp_path):
    repo = JsonRepository(tmp_path / "rows.json", entity_name="row")
    row = repo.add({"id": "a", "amount": Decimal("1.50"), "day": date(2024, 1, 1)})
    assert row == {"id": "a", "amount": "1.50", "day": "2024-01-01"}

    on_disk = json.loads((tmp_path / "rows.json").read_text(encoding="utf-8"))
    assert on_disk == [row]
    assert JsonRepository(tmp_path / "rows.json").get_by_id("a") == row


def test_update_bumps_version_and_checks_it():
    repo = JsonRepository()
    repo.add({"id": "a", "name": "x", "version": 0})
    updated = repo.update({"id": "a", "name": "y"}, expected_version=0)
    assert updated == {"id": "a", "name": "y", "version": 1}
    with pytest.raises(ConflictError):
        repo.update({"id": "a", "name": "z"}, expected_version=0)
    with pytest.raises(NotFoundError):
        repo.update({"id": "missing"})


def test_duplicate_key():
    repo = JsonRepository()
    repo.add({"id": "a"})
    with pytest.raises(ConflictError):
        repo.add({"id": "a"})


def test_find_filters_and_orders():
    repo = JsonRepository()
    for i, (p, d) in enumerate([("p1", "2024-03-01"), ("p2", "2024-01-01"), ("p1", "2024-02-01")]):
        repo.add({"id": str(i), "project_id": p, "due": d})
    assert [r["id"] for r in repo.find(project_id="p1", order_by="due")] == ["2", "0"]
    assert [r["id"] for r in repo.find(lambda r: r["due"] < "2024-03-01", order_by="due", reverse=True)] == ["2", "1"]
    assert repo.find_one(project_id="p3") is None


def test_corrupt_file_is_set_aside(tmp_path):
    path = tmp_path / "rows.json"
    path.write_text("{not json", encoding="utf-8")
    repo = JsonRepository(path)
    assert repo.list_all() == []
    assert (tmp_path / "rows.corrupt.json").exists()


def test_backups_are_rotated(tmp_path):
    repo = JsonRepository(tmp_path / "rows.json", backup_keep=2)
    for i in range(5):
        repo.add({"id": str(i)})
    assert len(list(tmp_path.glob("rows.*.bak.json"))) == 2


def test_transaction_rolls_back_every_table(tmp_path):
    store = Store(tmp_path)
    store.projects.add(Project(id="p", name="P"))
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.invoices.add({"id": "i"})
            store.projects.delete("p")
            raise RuntimeError("boom")

    assert store.invoices.list_all() == []
    assert store.projects.get_by_id("p")["name"] == "P"
    assert not (tmp_path / "invoices.json").exists()


def test_transaction_writes_on_commit(tmp_path):
    store = Store(tmp_path)
    with store.transaction():
        store.invoices.add({"id": "i"})
        with store.transaction():
            store.quotations.add({"id": "q"})
        assert not (tmp_path / "invoices.json").exists()
    assert json.loads((tmp_path / "invoices.json").read_text(encoding="utf-8")) == [{"id": "i"}]
    assert Store(tmp_path).quotations.get_by_id("q") == {"id": "q"}


def test_unknown_table():
    with pytest.raises(AttributeError):
        Store().customers
