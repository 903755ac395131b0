import json
from datetime import date

from billing import cron
from billing.config import load_settings
from billing.models.project import Project
from billing.storage.store import Store

ENV_KEYS = ("BILLING_DATA_DIR", "BILLING_CURRENCY", "ACCOUNTING_ENABLED", "ACCOUNTING_API_KEY",
            "ACCOUNTING_API_URL", "ACCOUNTING_TIMEOUT", "CRON_SECRET", "APP_BASE_URL")


def _clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(tmp_path, monkeypatch):
    _clean_env(monkeypatch)
    s = load_settings(tmp_path, dotenv_path=tmp_path / "missing.env")
    assert s.data_dir == tmp_path
    assert (s.currency, s.invoice_prefix, s.quotation_prefix) == ("EUR", "RE", "ANG")
    assert (s.quotation_payment_days, s.recurring_payment_days) == (14, 30)
    assert s.accounting.usable is False


def test_settings_file_then_environment(tmp_path, monkeypatch):
    _clean_env(monkeypatch)
    (tmp_path / "settings.json").write_text(json.dumps({
        "currency": "CHF",
        "recurring_payment_days": 10,
        "accounting": {"enabled": True, "timeout": 2},
        "theme": "dark",
    }), encoding="utf-8")
    monkeypatch.setenv("ACCOUNTING_API_KEY", "k")
    monkeypatch.setenv("CRON_SECRET", "x")
    monkeypatch.setenv("BILLING_CURRENCY", "EUR")

    s = load_settings(tmp_path, dotenv_path=tmp_path / "missing.env")
    assert s.currency == "EUR"
    assert s.recurring_payment_days == 10
    assert s.cron_secret == "x"
    assert s.accounting.timeout == 2.0
    assert s.accounting.usable is True


def test_dotenv_is_read(tmp_path, monkeypatch):
    _clean_env(monkeypatch)
    env = tmp_path / ".env"
    env.write_text("APP_BASE_URL=https://billing.example.com\n", encoding="utf-8")
    s = load_settings(tmp_path, dotenv_path=env)
    assert s.app_base_url == "https://billing.example.com"
    monkeypatch.delenv("APP_BASE_URL", raising=False)


def test_cron_main(tmp_path, monkeypatch, capsys):
    _clean_env(monkeypatch)
    monkeypatch.setattr("billing.config.load_dotenv", lambda **kw: False)
    store = Store(tmp_path)
    store.projects.add(Project(id="proj-1", name="P"))
    store.recurring_invoices.add({
        "id": "r1", "title": "Hosting", "project_id": "proj-1",
        "line_items": [{"name": "Hosting", "quantity": "1", "unit_price": "10", "tax_rate": 19}],
        "net_amount": "10.00", "tax_amount": "1.90", "total_amount": "11.90",
        "interval_type": "monthly", "interval_value": 1,
        "start_date": "2024-01-01", "next_invoice_date": "2024-01-01",
        "is_active": True, "send_notification": False,
    })

    code = cron.main(["--as-of", "2024-01-01", "--data-dir", str(tmp_path)])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["generated_count"] == 1
    assert out["as_of"] == date(2024, 1, 1).isoformat()
    assert json.loads((tmp_path / "recurring_invoices.json").read_text(encoding="utf-8"))[0]["next_invoice_date"] \
        == "2024-02-01"
