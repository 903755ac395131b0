from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime

from billing.clock import utcnow
from .common import gen_id

EntityType = Literal["quotation", "invoice"]
SyncStatus = Literal["success", "failed"]


class SyncLogEntry(BaseModel):
    id: str = Field(default_factory=gen_id)
    at: datetime = Field(default_factory=utcnow)
    entity_type: EntityType
    entity_id: str
    action: str  # create, finalize, create_from_recurring…
    status: SyncStatus = "success"
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    response_data: Dict[str, Any] = Field(default_factory=dict)


class ActivityLogEntry(BaseModel):
    id: str = Field(default_factory=gen_id)
    at: datetime = Field(default_factory=utcnow)
    project_id: str
    user_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
