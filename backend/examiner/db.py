"""Database handle for the stores and the chat event log.

With ``STORAGE_TYPE=mongo`` this is a real ``AsyncMongoClient`` database.
Otherwise an in-process stand-in answers the few collection calls the code
makes, with the same signatures and return values as pymongo's async API.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.results import DeleteResult, InsertOneResult

from .config import Settings

Document = Dict[str, Any]


def _selected(doc: Document, query: Document) -> bool:
    for key, wanted in query.items():
        value = doc.get(key)
        if isinstance(wanted, dict):
            # sequence filters are the only range queries issued
            if set(wanted) != {"$gt"}:
                raise ValueError(f"Unsupported filter on {key}: {wanted}")
            if value is None or value <= wanted["$gt"]:
                return False
        elif value != wanted:
            return False
    return True


def _updated(doc: Document, update: Document) -> Document:
    unknown = set(update) - {"$set", "$inc"}
    if unknown:
        raise ValueError(f"Unsupported update operators: {sorted(unknown)}")
    doc = copy.deepcopy(doc)
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key, step in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + step
    return doc


class InMemoryCollection:
    """Documents in insertion order behind one lock; callers only ever see copies."""

    def __init__(self):
        self._docs: List[Document] = []
        self._lock = asyncio.Lock()

    def _position(self, query: Document) -> Optional[int]:
        for idx, doc in enumerate(self._docs):
            if _selected(doc, query):
                return idx
        return None

    async def find_one(self, query: Document) -> Optional[Document]:
        async with self._lock:
            idx = self._position(query)
            return None if idx is None else copy.deepcopy(self._docs[idx])

    async def find(
        self,
        query: Optional[Document] = None,
        *,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
    ) -> AsyncIterator[Document]:
        async with self._lock:
            docs = [copy.deepcopy(doc) for doc in self._docs if _selected(doc, query or {})]
        for key, direction in reversed(sort or []):
            docs.sort(key=lambda doc: doc.get(key), reverse=direction < 0)
        for doc in docs[:limit] if limit else docs:
            yield doc

    async def insert_one(self, document: Document) -> InsertOneResult:
        async with self._lock:
            self._docs.append(copy.deepcopy(document))
        return InsertOneResult(document.get("_id"), acknowledged=True)

    async def find_one_and_update(
        self,
        query: Document,
        update: Document,
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Document]:
        async with self._lock:
            idx = self._position(query)
            if idx is None:
                if not upsert:
                    return None
                seed = {k: v for k, v in query.items() if not isinstance(v, dict)}
                self._docs.append(_updated(seed, update))
                before, after = None, self._docs[-1]
            else:
                before = self._docs[idx]
                after = self._docs[idx] = _updated(before, update)
            chosen = after if return_document == ReturnDocument.AFTER else before
            return copy.deepcopy(chosen)

    async def find_one_and_delete(self, query: Document) -> Optional[Document]:
        async with self._lock:
            idx = self._position(query)
            return None if idx is None else self._docs.pop(idx)

    async def delete_one(self, query: Document) -> DeleteResult:
        async with self._lock:
            idx = self._position(query)
            if idx is not None:
                del self._docs[idx]
        return DeleteResult({"n": 0 if idx is None else 1}, acknowledged=True)


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.assignments = InMemoryCollection()
        self.chat_sequences = InMemoryCollection()
        self.chat_events = InMemoryCollection()


def create_database(settings: Settings) -> Any:
    if settings.STORAGE_TYPE == "mongo":
        if not settings.MONGO_URI:
            raise RuntimeError("STORAGE_TYPE=mongo requires MONGO_URI")
        from pymongo import AsyncMongoClient

        return AsyncMongoClient(settings.MONGO_URI)[settings.MONGO_DATABASE]
    return InMemoryDatabase()
