from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from billing.clock import Clock
from billing.config import Settings
from billing.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from billing.models.line_item import compute_totals, validate_line_items
from billing.models.quotation import QUOTATION_STATUSES, Quotation
from billing.services.accounting_service import AccountingService
from billing.services.activity import record_activity
from billing.services.project_service import ProjectDirectory
from billing.storage.store import Store

logger = logging.getLogger(__name__)

_UNSET: Any = object()

# status -> timestamp stamped when the quotation enters that status
STATUS_TIMESTAMPS = {
    "sent": "sent_at",
    "accepted": "accepted_at",
    "rejected": "rejected_at",
}


class QuotationResult(NamedTuple):
    quotation: Quotation
    warnings: List[str]


class QuotationService:
    """
    Quotation lifecycle. Operators may move a quotation between any two stored
    statuses; entering a status (re)stamps its timestamp and leaves the others.
    """

    def __init__(self, store: Store, clock: Optional[Clock] = None, settings: Optional[Settings] = None,
                 accounting: Optional[AccountingService] = None) -> None:
        self.store = store
        self.repo = store.quotations
        self.clock = clock or Clock()
        self.settings = settings or Settings()
        self.accounting = accounting or AccountingService(store, clock=self.clock)
        self.projects = ProjectDirectory(store)

    # ----- Lecture ----- #

    def _hydrate(self, d: Dict[str, Any]) -> Quotation:
        return Quotation.model_validate(d)

    def get_quotation(self, quotation_id: str) -> Quotation:
        d = self.repo.get_by_id(quotation_id)
        if not d:
            raise NotFoundError(f"quotation {quotation_id} not found")
        return self._hydrate(d)

    def list_quotations(self, project_id: Optional[str] = None, status: Optional[str] = None) -> List[Quotation]:
        """Newest first; `status` is matched against the display status (so `expired` works)."""
        today = self.clock.today()
        rows = self.repo.find(project_id=project_id) if project_id else self.repo.list_all()
        out: List[Quotation] = []
        for d in rows:
            try:
                q = self._hydrate(d)
            except PydanticValidationError:
                logger.warning("Skipping unreadable quotation row %s", d.get("id"))
                continue
            if status and q.display_status(today) != status:
                continue
            out.append(q)
        out.sort(key=lambda q: q.created_at, reverse=True)
        return out

    def display_status(self, q: Quotation, today: Optional[date] = None) -> str:
        return q.display_status(today or self.clock.today())

    # ----- Numérotation ----- #

    def next_quotation_number(self, year: Optional[int] = None) -> str:
        year = year or self.clock.today().year
        prefix = f"{self.settings.quotation_prefix}-{year}-"
        max_n = 0
        for d in self.repo.list_all():
            m = re.fullmatch(re.escape(prefix) + r"(\d+)", d.get("quotation_number") or "")
            if m:
                max_n = max(max_n, int(m.group(1)))
        return f"{prefix}{max_n + 1:04d}"

    # ----- Création ----- #

    def create_quotation(
        self,
        project_id: str,
        title: str,
        line_items: Sequence[Any],
        *,
        description: Optional[str] = None,
        valid_until: Optional[date] = None,
        quotation_number: Optional[str] = None,
        currency: Optional[str] = None,
        send: bool = False,
        created_by: Optional[str] = None,
        sync_to_accounting: bool = False,
    ) -> QuotationResult:
        if not title or not title.strip():
            raise ValidationError("title is required")
        items = validate_line_items(line_items or [])
        if not items:
            raise ValidationError("at least one line item is required")
        self.projects.require(project_id)
        totals = compute_totals(items)

        now = self.clock.now()
        with self.store.transaction():
            number = (quotation_number or "").strip() or self.next_quotation_number()
            if self.repo.find_one(quotation_number=number):
                raise ConflictError(f"quotation number {number} already exists")
            q = Quotation(
                quotation_number=number,
                title=title.strip(),
                description=(description or "").strip() or None,
                project_id=project_id,
                line_items=items,
                net_amount=totals.net, tax_amount=totals.tax, total_amount=totals.total,
                currency=currency or self.settings.currency,
                status="sent" if send else "draft",
                sent_at=now if send else None,
                valid_until=valid_until,
                created_by=created_by,
                created_at=now, updated_at=now,
            )
            q = self._hydrate(self.repo.add(q))
        logger.info("Quotation %s created as %s (%s %s)", q.quotation_number, q.status, q.total_amount, q.currency)

        warnings: List[str] = []
        if send or sync_to_accounting:
            q, warning = self._push(q, finalize=send)
            if warning:
                warnings.append(warning)
        return QuotationResult(q, warnings)

    # ----- Édition ----- #

    def update_quotation(
        self,
        quotation_id: str,
        *,
        title: Any = _UNSET,
        description: Any = _UNSET,
        valid_until: Any = _UNSET,
        expected_version: Optional[int] = None,
    ) -> Quotation:
        """Edit the texts and validity of a quotation that is not mirrored in accounting yet."""
        with self.store.transaction():
            q = self.get_quotation(quotation_id)
            if q.external_accounting_id:
                raise InvalidStateError(f"quotation {q.quotation_number} is mirrored in accounting "
                                        "and can no longer be edited")
            version = q.version if expected_version is None else expected_version
            if title is not _UNSET:
                if not title or not str(title).strip():
                    raise ValidationError("title is required")
                q.title = str(title).strip()
            if description is not _UNSET:
                q.description = (description or "").strip() or None
            if valid_until is not _UNSET:
                q.valid_until = valid_until
            q.touch(self.clock.now())
            return self._hydrate(self.repo.update(q, expected_version=version))

    # ----- Transitions ----- #

    def _push(self, q: Quotation, *, finalize: bool) -> tuple[Quotation, Optional[str]]:
        res = self.accounting.sync_quotation(q, finalize=finalize, action="finalize" if finalize else "create")
        if res.pushed:
            q = self.get_quotation(q.id)
        return q, res.warning

    def update_status(self, quotation_id: str, status: str, *,
                      expected_version: Optional[int] = None) -> QuotationResult:
        """
        Write a new stored status. The accounting push on entering `sent` runs
        after the local write and can only add a warning.
        """
        if status not in QUOTATION_STATUSES:
            raise ValidationError(f"unknown quotation status {status!r}")

        with self.store.transaction():
            q = self.get_quotation(quotation_id)
            if q.status == status:
                raise InvalidStateError(f"quotation {q.quotation_number} is already {status}")
            version = q.version if expected_version is None else expected_version
            now = self.clock.now()
            q.status = status
            stamp = STATUS_TIMESTAMPS.get(status)
            if stamp:
                setattr(q, stamp, now)
            q.touch(now)
            q = self._hydrate(self.repo.update(q, expected_version=version))
        logger.info("Quotation %s -> %s", q.quotation_number, status)

        warnings: List[str] = []
        if status == "sent" and not q.external_accounting_id:
            q, warning = self._push(q, finalize=True)
            if warning:
                warnings.append(warning)
        return QuotationResult(q, warnings)

    def send_quotation(self, quotation_id: str) -> QuotationResult:
        q = self.get_quotation(quotation_id)
        if q.status != "draft":
            raise InvalidStateError("only draft quotations can be sent")
        return self.update_status(quotation_id, "sent", expected_version=q.version)

    def accept(self, quotation_id: str) -> QuotationResult:
        return self.update_status(quotation_id, "accepted")

    def reject(self, quotation_id: str) -> QuotationResult:
        return self.update_status(quotation_id, "rejected")

    def sync_quotation(self, quotation_id: str) -> QuotationResult:
        """Retry the accounting push on its own. Returns the existing id when already mirrored."""
        q = self.get_quotation(quotation_id)
        q, warning = self._push(q, finalize=q.status != "draft")
        return QuotationResult(q, [warning] if warning else [])

    # ----- Suppression ----- #

    def delete_quotation(self, quotation_id: str) -> bool:
        with self.store.transaction():
            q = self.get_quotation(quotation_id)
            if q.status != "draft":
                raise InvalidStateError("only draft quotations can be deleted")
            if q.external_accounting_id:
                raise InvalidStateError("quotation is mirrored in accounting and cannot be deleted")
            deleted = self.repo.delete(quotation_id)
            record_activity(self.store, self.clock, project_id=q.project_id, action="quotation_deleted",
                            entity_type="quotation", entity_id=q.id, quotation_number=q.quotation_number)
        return deleted
