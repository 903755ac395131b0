from __future__ import annotations

import copy
import glob
import json
import logging
import shutil
import threading
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel

from billing.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Union[BaseModel, Mapping[str, Any]])
Row = Dict[str, Any]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return str(o)
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


class JsonRepository(Generic[T]):
    """
    Table of JSON rows with a configurable primary key.
    - Memory only when `filepath` is None, otherwise mirrored to a JSON file
    - Rotating backups (backup_enabled, backup_keep)
    - Compare-and-set updates on the `version` column
    - Writes are deferred while the owning store holds a transaction
    """

    def __init__(
        self,
        filepath: Optional[Union[str, Path]] = None,
        entity_name: str = "entity",
        key: str = "id",
        *,
        lock: Optional[threading.RLock] = None,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath) if filepath else None
        self.entity_name = entity_name
        self.key = key
        self._lock = lock or threading.RLock()
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        self._deferred = False
        self._dirty = False

        if self.filepath is not None:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self._rows: List[Row] = self._read_raw()

    # ---------------- I/O bas niveau ---------------- #

    def _read_raw(self) -> List[Row]:
        if self.filepath is None:
            return []
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            # corrupt file: keep a copy aside and start from an empty table
            backup = self.filepath.with_suffix(".corrupt.json")
            shutil.copy2(self.filepath, backup)
            logger.error("%s table %s is corrupt, saved as %s", self.entity_name, self.filepath, backup)
            return []

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        if len(files) > self.backup_keep:
            for old in files[: len(files) - self.backup_keep]:
                Path(old).unlink(missing_ok=True)

    def _write_raw(self) -> None:
        if self.filepath is None:
            return
        if self._deferred:
            self._dirty = True
            return
        new_dump = json.dumps(self._rows, ensure_ascii=False, indent=2, default=_json_default)

        # identical content: nothing to do
        if self.filepath.exists() and self.filepath.read_text(encoding="utf-8") == new_dump:
            return

        if self.backup_enabled and self.filepath.exists():
            ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
            shutil.copy2(self.filepath, self.filepath.with_suffix(f".{ts}.bak.json"))
            self._rotate_backups()

        tmp = self.filepath.with_suffix(".tmp")
        tmp.write_text(new_dump, encoding="utf-8")
        tmp.replace(self.filepath)

    # ---------------- Transactions ---------------- #

    def snapshot(self) -> List[Row]:
        return copy.deepcopy(self._rows)

    def begin(self) -> None:
        self._deferred = True
        self._dirty = False

    def commit(self) -> None:
        self._deferred = False
        if self._dirty:
            self._dirty = False
            self._write_raw()

    def rollback(self, snapshot: List[Row]) -> None:
        self._rows = snapshot
        self._deferred = False
        self._dirty = False

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _to_dict(item: T) -> Row:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        if isinstance(item, Mapping):
            return json.loads(json.dumps(dict(item), default=_json_default))
        raise TypeError(f"cannot store {type(item).__name__}")

    def _index_of_key(self, key_value: Any) -> int:
        for i, d in enumerate(self._rows):
            if str(d.get(self.key)) == str(key_value):
                return i
        return -1

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Row]:
        with self._lock:
            return copy.deepcopy(self._rows)

    def get_by_id(self, obj_id: Any) -> Optional[Row]:
        with self._lock:
            idx = self._index_of_key(obj_id)
            return copy.deepcopy(self._rows[idx]) if idx >= 0 else None

    def add(self, item: T) -> Row:
        record = self._to_dict(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        with self._lock:
            if self._index_of_key(record[k]) >= 0:
                raise ConflictError(f"{self.entity_name} with {k}={record[k]} already exists")
            self._rows.append(record)
            self._write_raw()
        return copy.deepcopy(record)

    def update(self, item: T, *, expected_version: Optional[int] = None) -> Row:
        """
        Merge `item` into the stored row and bump its version.
        With `expected_version`, the write only happens if the stored version still matches.
        """
        record = self._to_dict(item)
        k = self.key
        obj_id = record.get(k)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{k}'")
        with self._lock:
            idx = self._index_of_key(obj_id)
            if idx < 0:
                raise NotFoundError(f"{self.entity_name} with {k}={obj_id} not found")
            existing = self._rows[idx]
            current = int(existing.get("version") or 0)
            if expected_version is not None and current != expected_version:
                raise ConflictError(
                    f"{self.entity_name} {obj_id} was modified concurrently "
                    f"(expected version {expected_version}, found {current})",
                    details={"id": obj_id, "expected": expected_version, "found": current},
                )
            merged = {**existing, **record, "version": current + 1}
            self._rows[idx] = merged
            self._write_raw()
            return copy.deepcopy(merged)

    def delete(self, obj_id: Any) -> bool:
        with self._lock:
            idx = self._index_of_key(obj_id)
            if idx < 0:
                return False
            self._rows.pop(idx)
            self._write_raw()
            return True

    def delete_where(self, predicate: Callable[[Row], bool]) -> int:
        with self._lock:
            kept = [r for r in self._rows if not predicate(r)]
            removed = len(self._rows) - len(kept)
            if removed:
                self._rows = kept
                self._write_raw()
            return removed

    # ---------------- Recherches ---------------- #

    def find(
        self,
        predicate: Optional[Callable[[Row], bool]] = None,
        *,
        order_by: Optional[str] = None,
        reverse: bool = False,
        **equals: Any,
    ) -> List[Row]:
        """Rows matching every `column=value` pair and the predicate, optionally sorted."""
        with self._lock:
            out = [
                copy.deepcopy(r)
                for r in self._rows
                if all(r.get(c) == v for c, v in equals.items()) and (predicate is None or predicate(r))
            ]
        if order_by:
            out.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=reverse)
        return out

    def find_one(self, predicate: Optional[Callable[[Row], bool]] = None, **equals: Any) -> Optional[Row]:
        rows = self.find(predicate, **equals)
        return rows[0] if rows else None

    def count(self, predicate: Optional[Callable[[Row], bool]] = None, **equals: Any) -> int:
        return len(self.find(predicate, **equals))

