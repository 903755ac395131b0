from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime

from billing.clock import utcnow
from .common import gen_id


class QueuedEmail(BaseModel):
    id: str = Field(default_factory=gen_id)
    queued_at: datetime = Field(default_factory=utcnow)
    event: str
    recipient_email: str
    recipient_name: Optional[str] = None
    subject: str
    content_text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "sent", "failed"] = "pending"
