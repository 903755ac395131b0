from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from .repo import JsonRepository

logger = logging.getLogger(__name__)

TABLES = {
    "projects": "project",
    "quotations": "quotation",
    "invoices": "invoice",
    "recurring_invoices": "recurring invoice",
    "recurring_invoice_history": "recurring invoice history",
    "sync_log": "sync log entry",
    "activity_log": "activity log entry",
    "email_queue": "queued email",
}


class Store:
    """
    The persistent store: one JsonRepository per table, all sharing one lock.
    Without `data_dir` every table lives in memory only.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None, *, backup_keep: int = 5) -> None:
        self.data_dir = Path(data_dir) if data_dir else None
        self._lock = threading.RLock()
        self._depth = 0
        self.tables: Dict[str, JsonRepository] = {}
        for name, entity in TABLES.items():
            path = self.data_dir / f"{name}.json" if self.data_dir else None
            self.tables[name] = JsonRepository(
                path, entity_name=entity, key="id", lock=self._lock,
                backup_enabled=backup_keep > 0, backup_keep=backup_keep,
            )

    def __getattr__(self, name: str) -> JsonRepository:
        tables = self.__dict__.get("tables") or {}
        if name in tables:
            return tables[name]
        raise AttributeError(name)

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """
        All-or-nothing block across tables. Holds the store lock; nothing is
        written to disk before the outermost block exits cleanly, and every
        table is restored to its snapshot if the block raises.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshots = {name: repo.snapshot() for name, repo in self.tables.items()}
            for repo in self.tables.values():
                repo.begin()
            self._depth = 1
            try:
                yield self
            except BaseException:
                for name, repo in self.tables.items():
                    repo.rollback(snapshots[name])
                logger.debug("store transaction rolled back")
                raise
            else:
                for repo in self.tables.values():
                    repo.commit()
            finally:
                self._depth = 0
