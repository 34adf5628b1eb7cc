"""Messaging collaborator used to talk to candidates and assigners.

The engine only needs three verbs: send a message (optionally with answer
buttons), edit it and delete it.  :class:`EventStoreMessenger` implements them
on top of the per-chat event log that clients poll over HTTP.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

from .errors import MessageNotFound, MessageNotModified
from .events import EventStore


class MessageHandle(BaseModel):
    chat_id: str
    message_id: str


class Messenger(Protocol):
    async def send(
        self, recipient: str, text: str, options: Optional[List[str]] = None
    ) -> MessageHandle: ...

    async def edit(self, handle: MessageHandle, text: str) -> None: ...

    async def delete(self, handle: MessageHandle) -> None: ...


class EventStoreMessenger:
    def __init__(self, event_store: EventStore):
        self._events = event_store
        self._texts: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def send(
        self, recipient: str, text: str, options: Optional[List[str]] = None
    ) -> MessageHandle:
        handle = MessageHandle(chat_id=recipient, message_id=uuid.uuid4().hex)
        async with self._lock:
            self._texts[(handle.chat_id, handle.message_id)] = text
        await self._events.append(
            recipient,
            {
                "type": "message",
                "message_id": handle.message_id,
                "text": text,
                "options": list(options or []),
            },
        )
        return handle

    async def edit(self, handle: MessageHandle, text: str) -> None:
        key = (handle.chat_id, handle.message_id)
        async with self._lock:
            current = self._texts.get(key)
            if current is None:
                raise MessageNotFound(f"message {handle.message_id} not found in chat {handle.chat_id}")
            if current == text:
                raise MessageNotModified("message is not modified")
            self._texts[key] = text
        await self._events.append(
            handle.chat_id,
            {"type": "edit", "message_id": handle.message_id, "text": text},
        )

    async def delete(self, handle: MessageHandle) -> None:
        async with self._lock:
            if self._texts.pop((handle.chat_id, handle.message_id), None) is None:
                raise MessageNotFound(f"message {handle.message_id} not found in chat {handle.chat_id}")
        await self._events.append(
            handle.chat_id,
            {"type": "delete", "message_id": handle.message_id},
        )
