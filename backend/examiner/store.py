"""Durable keyed storage for candidate sessions and pending assignments.

Both stores speak whole records: a caller reads a value, changes it and
writes it back.  The backends make each individual read and write atomic;
the JSON file backend holds one lock across every load+mutate+save so that
interleaved writers never lose an update.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import Settings
from .errors import StoreError, StoreLoadError
from .models import PendingAssignment, SessionState
from .utils import normalize_handle, now_ts

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


class CollectionBackend:
    """Records kept as documents in a Mongo (or in-memory) collection."""

    def __init__(self, collection: Any, key_field: str):
        self._collection = collection
        self._key_field = key_field

    async def get(self, key: str) -> Optional[Document]:
        try:
            doc = await self._collection.find_one({self._key_field: key})
        except PyMongoError as exc:
            raise StoreError(f"Failed to read {key}: {exc}") from exc
        return self._strip(doc)

    async def set(self, key: str, doc: Document) -> None:
        try:
            await self._collection.find_one_and_update(
                {self._key_field: key},
                {"$set": doc},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise StoreError(f"Failed to write {key}: {exc}") from exc

    async def delete(self, key: str) -> bool:
        try:
            result = await self._collection.delete_one({self._key_field: key})
        except PyMongoError as exc:
            raise StoreError(f"Failed to delete {key}: {exc}") from exc
        return result.deleted_count > 0

    async def pop(self, key: str) -> Optional[Document]:
        try:
            doc = await self._collection.find_one_and_delete({self._key_field: key})
        except PyMongoError as exc:
            raise StoreError(f"Failed to remove {key}: {exc}") from exc
        return self._strip(doc)

    async def load_all(self) -> Dict[str, Document]:
        docs: Dict[str, Document] = {}
        try:
            async for doc in self._collection.find({}):
                doc = self._strip(doc)
                docs[doc[self._key_field]] = doc
        except PyMongoError as exc:
            raise StoreError(f"Failed to scan records: {exc}") from exc
        return docs

    @staticmethod
    def _strip(doc: Optional[Document]) -> Optional[Document]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc


class JSONFileBackend:
    """All records in a single JSON object on disk, rewritten on every change."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        try:
            if not self._path.exists():
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._write({})
            else:
                self._read()
        except (OSError, ValueError) as exc:
            raise StoreLoadError(f"Unusable store file {self._path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Document]:
        raw = self._path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("top-level JSON value must be an object")
        return data

    def _write(self, data: Dict[str, Document]) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self._path)

    async def _load(self) -> Dict[str, Document]:
        try:
            return await asyncio.to_thread(self._read)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Failed to read {self._path}: {exc}") from exc

    async def _save(self, data: Dict[str, Document]) -> None:
        try:
            await asyncio.to_thread(self._write, data)
        except (OSError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to write {self._path}: {exc}") from exc

    async def get(self, key: str) -> Optional[Document]:
        async with self._lock:
            data = await self._load()
        return data.get(key)

    async def set(self, key: str, doc: Document) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = doc
            await self._save(data)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            data = await self._load()
            if key not in data:
                return False
            del data[key]
            await self._save(data)
            return True

    async def pop(self, key: str) -> Optional[Document]:
        async with self._lock:
            data = await self._load()
            doc = data.pop(key, None)
            if doc is not None:
                await self._save(data)
            return doc

    async def load_all(self) -> Dict[str, Document]:
        async with self._lock:
            return await self._load()


class SessionStore:
    """Candidate id -> :class:`SessionState`."""

    def __init__(self, backend):
        self._backend = backend

    async def get(self, candidate_id: str) -> Optional[SessionState]:
        doc = await self._backend.get(candidate_id)
        if doc is None:
            return None
        try:
            return SessionState.model_validate(doc)
        except ValueError:
            logger.exception("Discarding malformed session record for %s", candidate_id)
            return None

    async def set(self, candidate_id: str, state: SessionState) -> None:
        await self._backend.set(candidate_id, state.model_dump(mode="json"))

    async def delete(self, candidate_id: str) -> bool:
        return await self._backend.delete(candidate_id)

    async def load_all(self) -> Dict[str, SessionState]:
        states: Dict[str, SessionState] = {}
        for key, doc in (await self._backend.load_all()).items():
            try:
                states[key] = SessionState.model_validate(doc)
            except ValueError:
                logger.exception("Skipping malformed session record for %s", key)
        return states


class AssignmentStore:
    """Pending test assignments keyed by the candidate's handle."""

    def __init__(self, backend):
        self._backend = backend

    async def assign(
        self,
        candidate_handle: str,
        *,
        assigned_by: Optional[str] = None,
        assigned_by_id: Optional[str] = None,
        category: Optional[str] = None,
    ) -> PendingAssignment:
        handle = normalize_handle(candidate_handle)
        assignment = PendingAssignment(
            candidate_handle=handle,
            assigned_by=assigned_by,
            assigned_by_id=assigned_by_id,
            category=category,
            assigned_at=now_ts(),
        )
        await self._backend.set(handle, assignment.model_dump(mode="json"))
        return assignment

    async def get(self, candidate_handle: str) -> Optional[PendingAssignment]:
        doc = await self._backend.get(normalize_handle(candidate_handle))
        return PendingAssignment.model_validate(doc) if doc else None

    async def claim(self, candidate_handle: str) -> Optional[PendingAssignment]:
        doc = await self._backend.pop(normalize_handle(candidate_handle))
        return PendingAssignment.model_validate(doc) if doc else None

    async def cancel(self, candidate_handle: str) -> bool:
        return await self._backend.delete(normalize_handle(candidate_handle))

    async def list(self) -> List[PendingAssignment]:
        docs = await self._backend.load_all()
        return sorted(
            (PendingAssignment.model_validate(doc) for doc in docs.values()),
            key=lambda a: a.assigned_at,
        )


def create_stores(settings: Settings, database: Any) -> Tuple[SessionStore, AssignmentStore]:
    if settings.STORAGE_TYPE == "json":
        return (
            SessionStore(JSONFileBackend(settings.SESSIONS_FILE)),
            AssignmentStore(JSONFileBackend(settings.ASSIGNMENTS_FILE)),
        )
    return (
        SessionStore(CollectionBackend(database.sessions, "candidate_id")),
        AssignmentStore(CollectionBackend(database.assignments, "candidate_handle")),
    )
