from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound

from billing.clock import Clock
from billing.errors import BillingError
from billing.models.notification import QueuedEmail
from billing.services.project_service import ProjectDirectory
from billing.storage.store import Store

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates" / "email"


class NotificationService:
    """
    Fire-and-forget dispatcher: renders the event's templates and queues one
    email per project recipient. Failures are logged, never raised.
    """

    def __init__(self, store: Store, clock: Optional[Clock] = None, templates_dir: Path = TEMPLATES_DIR):
        self.repo = store.email_queue
        self.projects = ProjectDirectory(store)
        self.clock = clock or Clock()
        self.env = Environment(loader=FileSystemLoader(str(templates_dir)), autoescape=False,
                               keep_trailing_newline=False)

    def _template(self, event: str, suffix: str):
        try:
            return self.env.get_template(f"{event}{suffix}")
        except TemplateNotFound:
            return self.env.get_template(f"default{suffix}")

    def render(self, event: str, payload: Dict[str, Any], recipient_name: Optional[str] = None) -> tuple[str, str]:
        ctx = {**payload, "event": event, "payload": payload, "recipient_name": recipient_name}
        subject = self._template(event, ".subject.txt").render(**ctx).strip()
        body = self._template(event, ".txt").render(**ctx)
        return subject, body

    def notify(self, event: str, payload: Dict[str, Any]) -> List[QueuedEmail]:
        queued: List[QueuedEmail] = []
        try:
            project_id = payload.get("project_id")
            recipients = self.projects.recipients(project_id) if project_id else []
            if not recipients:
                logger.info("No recipients for %s (project %s)", event, project_id)
                return queued
            for r in recipients:
                subject, body = self.render(event, payload, recipient_name=r.name)
                mail = QueuedEmail(
                    queued_at=self.clock.now(), event=event,
                    recipient_email=str(r.email), recipient_name=r.name,
                    subject=subject, content_text=body,
                    metadata={k: payload[k] for k in ("project_id", "invoice_id", "recurring_invoice_id") if k in payload},
                )
                self.repo.add(mail)
                queued.append(mail)
        except (TemplateError, OSError, ValueError, BillingError) as e:
            logger.warning("Notification %s failed: %s", event, e)
        return queued

    def pending(self) -> List[QueuedEmail]:
        return [QueuedEmail(**d) for d in self.repo.find(status="pending", order_by="queued_at")]
