from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = ROOT_DIR / "data"


class AccountingSettings(BaseModel):
    enabled: bool = False
    api_key: Optional[str] = None
    base_url: str = "https://api.lexware.io"
    timeout: float = 5.0
    min_request_interval: float = 0.5

    @property
    def usable(self) -> bool:
        return self.enabled and bool(self.api_key)


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    currency: str = "EUR"
    invoice_prefix: str = "RE"
    quotation_prefix: str = "ANG"
    quotation_payment_days: int = 14
    recurring_payment_days: int = 30
    cron_secret: Optional[str] = None
    app_base_url: str = "http://localhost:8000"
    accounting: AccountingSettings = Field(default_factory=AccountingSettings)

    class Config:
        extra = "ignore"  # settings.json may carry keys for other tools


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(data_dir: Optional[str | Path] = None, *, dotenv_path: Optional[str | Path] = None) -> Settings:
    """
    Settings in three layers: defaults, <data_dir>/settings.json, environment.
    The environment wins; a .env file at the project root is read first.
    """
    load_dotenv(dotenv_path=dotenv_path or ROOT_DIR / ".env")

    base = Path(data_dir or os.environ.get("BILLING_DATA_DIR") or DEFAULT_DATA_DIR)
    raw = _load_json(base / "settings.json") or {}
    raw["data_dir"] = base

    acc = dict(raw.get("accounting") or {})
    if os.environ.get("ACCOUNTING_ENABLED"):
        acc["enabled"] = _env_bool(os.environ["ACCOUNTING_ENABLED"])
    if os.environ.get("ACCOUNTING_API_KEY"):
        acc["api_key"] = os.environ["ACCOUNTING_API_KEY"]
    if os.environ.get("ACCOUNTING_API_URL"):
        acc["base_url"] = os.environ["ACCOUNTING_API_URL"]
    if os.environ.get("ACCOUNTING_TIMEOUT"):
        acc["timeout"] = float(os.environ["ACCOUNTING_TIMEOUT"])
    raw["accounting"] = acc

    if os.environ.get("BILLING_CURRENCY"):
        raw["currency"] = os.environ["BILLING_CURRENCY"]
    if os.environ.get("CRON_SECRET"):
        raw["cron_secret"] = os.environ["CRON_SECRET"]
    if os.environ.get("APP_BASE_URL"):
        raw["app_base_url"] = os.environ["APP_BASE_URL"]

    return Settings.model_validate(raw)
