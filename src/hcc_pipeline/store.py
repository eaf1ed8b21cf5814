"""Job store: insert, update-by-id and read back pipeline records.

Without a root directory records live in memory.  With one, each record is
a JSON file ``<root>/<collection>/<id>.json`` written atomically, so a
later process (``mode=status``/``mode=resume``) can read the job back.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from .models import (
    BatchRecord,
    ChapterRecord,
    ChunkRecord,
    DocumentRecord,
    ObjectionRecord,
    PipelineJob,
    utcnow,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)

COLLECTIONS: dict[str, type[BaseModel]] = {
    "jobs": PipelineJob,
    "documents": DocumentRecord,
    "chapters": ChapterRecord,
    "chunks": ChunkRecord,
    "objections": ObjectionRecord,
    "batches": BatchRecord,
}


_id_lock = threading.Lock()
_last_ns = 0


def new_id() -> str:
    """Record id that sorts in creation order."""
    global _last_ns
    with _id_lock:
        _last_ns = max(time.time_ns(), _last_ns + 1)
        stamp = _last_ns
    return f"{stamp:x}-{uuid.uuid4().hex[:6]}"


class JobStore:
    """Record store shared by the single-pass pipeline and the orchestrator."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else None
        self._lock = threading.RLock()
        self._memory: dict[str, dict[str, BaseModel]] = {name: {} for name in COLLECTIONS}
        if self.root is not None:
            for name in COLLECTIONS:
                (self.root / name).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _model(self, collection: str) -> type[BaseModel]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def _path(self, collection: str, record_id: str) -> Path:
        return self.root / collection / f"{record_id}.json"

    def _save(self, collection: str, record: BaseModel) -> None:
        if self.root is None:
            self._memory[collection][record.id] = record.model_copy(deep=True)
            return
        path = self._path(collection, record.id)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _load(self, collection: str, record_id: str) -> BaseModel | None:
        if self.root is None:
            record = self._memory[collection].get(record_id)
            return record.model_copy(deep=True) if record is not None else None
        path = self._path(collection, record_id)
        if not path.exists():
            return None
        return self._model(collection).model_validate_json(path.read_text(encoding="utf-8"))

    def _all(self, collection: str) -> list[BaseModel]:
        if self.root is None:
            return [r.model_copy(deep=True) for r in self._memory[collection].values()]
        model = self._model(collection)
        paths = sorted((self.root / collection).glob("*.json"))
        return [model.model_validate_json(p.read_text(encoding="utf-8")) for p in paths]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def insert(self, collection: str, record: R) -> R:
        """Persist a new record, assigning an id when it has none."""
        model = self._model(collection)
        if not isinstance(record, model):
            raise TypeError(f"{collection} holds {model.__name__}, got {type(record).__name__}")
        with self._lock:
            if not record.id:
                record = record.model_copy(update={"id": new_id()})
            self._save(collection, record)
        logger.debug("Inserted %s/%s", collection, record.id)
        return record

    def update(self, collection: str, record_id: str, **fields: Any) -> Any:
        """Set *fields* on an existing record and persist it."""
        with self._lock:
            current = self._load(collection, record_id)
            if current is None:
                raise KeyError(f"{collection}/{record_id}")
            if "updated_at" in type(current).model_fields:
                fields.setdefault("updated_at", utcnow())
            updated = type(current).model_validate({**current.model_dump(), **fields})
            self._save(collection, updated)
        return updated

    def get(self, collection: str, record_id: str) -> Any:
        self._model(collection)
        with self._lock:
            return self._load(collection, record_id)

    def find(self, collection: str, **filters: Any) -> list[Any]:
        """Records whose fields equal every filter value, in insertion order."""
        with self._lock:
            records = self._all(collection)
        return [r for r in records if all(getattr(r, k, None) == v for k, v in filters.items())]

    def delete_where(self, collection: str, **filters: Any) -> int:
        """Remove matching records and return how many were removed."""
        with self._lock:
            doomed = [r.id for r in self.find(collection, **filters)]
            for record_id in doomed:
                if self.root is None:
                    self._memory[collection].pop(record_id, None)
                else:
                    self._path(collection, record_id).unlink(missing_ok=True)
        return len(doomed)
