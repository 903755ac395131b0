from __future__ import annotations
from typing import Any, Dict, List, Optional

from billing.clock import Clock
from billing.models.accounting import ActivityLogEntry
from billing.storage.store import Store


def record_activity(store: Store, clock: Clock, *, project_id: str, action: str, entity_type: str,
                    entity_id: str, user_id: Optional[str] = None, **details: Any) -> ActivityLogEntry:
    entry = ActivityLogEntry(at=clock.now(), project_id=project_id, user_id=user_id, action=action,
                             entity_type=entity_type, entity_id=entity_id, details=details)
    store.activity_log.add(entry)
    return entry


def activity_for(store: Store, entity_id: str) -> List[Dict[str, Any]]:
    return store.activity_log.find(entity_id=entity_id, order_by="at")
