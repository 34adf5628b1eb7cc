"""Outbound chat log that clients poll over HTTP.

Every chat (a candidate or an assigning party) has its own sequence
counter.  A client remembers the last sequence it has seen and asks for
everything after it.
"""

from __future__ import annotations

from typing import Any, List

from pymongo import ReturnDocument

from .utils import now_ts


class EventStore:
    def __init__(self, database: Any):
        self._sequences = database.chat_sequences
        self._events = database.chat_events

    async def _next_seq(self, chat_id: str) -> int:
        counter = await self._sequences.find_one_and_update(
            {"_id": chat_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def append(self, chat_id: str, payload: dict[str, Any]) -> int:
        seq = await self._next_seq(chat_id)
        await self._events.insert_one(
            {"chat_id": chat_id, "seq": seq, "timestamp": now_ts(), "payload": payload}
        )
        return seq

    async def list(self, chat_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Events for ``chat_id`` with a sequence above ``after``, oldest first."""
        query: dict[str, Any] = {"chat_id": chat_id}
        if after is not None:
            query["seq"] = {"$gt": after}
        return [
            {"seq": doc["seq"], "timestamp": doc.get("timestamp"), "payload": doc.get("payload", {})}
            async for doc in self._events.find(query, sort=[("seq", 1)], limit=limit)
        ]
