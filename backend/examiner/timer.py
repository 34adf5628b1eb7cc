"""Per-candidate countdowns.

Each running countdown is an asyncio task that edits the candidate's
progress message once per tick and fires its timeout callback once when the
deadline passes.  The deadline lives in the session store, which is what
lets a restarted process pick a countdown up where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from .errors import MessageNotModified, MessagingError, StoreError
from .messaging import MessageHandle, Messenger
from .models import IN_PROGRESS, SessionState
from .store import SessionStore
from .utils import now_ts

logger = logging.getLogger(__name__)

RenderText = Callable[[], Awaitable[str]]
OnTimeout = Callable[[], Awaitable[None]]


@dataclass
class TimerHandle:
    owner_id: str
    deadline_ts: float
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    message: Optional[MessageHandle] = None
    task: Optional[asyncio.Task] = None
    firing: bool = False

    def cancel(self) -> None:
        self.cancelled.set()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class TimerManager:
    def __init__(
        self,
        store: SessionStore,
        messenger: Messenger,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = now_ts,
    ):
        self._store = store
        self._messenger = messenger
        self._tick = tick_seconds
        self._clock = clock
        self._timers: Dict[str, TimerHandle] = {}

    def active(self, owner_id: str) -> bool:
        handle = self._timers.get(owner_id)
        return handle is not None and handle.running

    def remaining(self, owner_id: str) -> Optional[float]:
        handle = self._timers.get(owner_id)
        if handle is None:
            return None
        return max(0.0, handle.deadline_ts - self._clock())

    async def start(
        self,
        owner_id: str,
        duration: float,
        render_text: RenderText,
        on_timeout: OnTimeout,
    ) -> Optional[TimerHandle]:
        """Start (or restart) the countdown for ``owner_id``.

        A deadline already persisted for the owner is kept while it lies in
        the future; otherwise the countdown runs for ``duration`` seconds from
        now.  Any previous loop for the owner is cancelled first.
        """
        previous = self._timers.pop(owner_id, None)
        if previous is not None:
            previous.cancel()
            await self._wait(previous)

        state = await self._store.get(owner_id)
        if state is None:
            logger.warning("Not starting timer for %s: no stored session", owner_id)
            return None

        now = self._clock()
        if state.deadline_ts is None or state.deadline_ts <= now:
            state.deadline_ts = now + duration
        stale_message_id = state.timer_message_id
        state.timer_message_id = None
        await self._store.set(owner_id, state)

        if stale_message_id:
            await self._delete_message(MessageHandle(chat_id=owner_id, message_id=stale_message_id))

        handle = TimerHandle(owner_id=owner_id, deadline_ts=state.deadline_ts)
        try:
            handle.message = await self._messenger.send(owner_id, await render_text())
        except MessagingError as exc:
            logger.warning("Failed to send timer message to %s: %s", owner_id, exc)

        if handle.message is not None:
            try:
                await self._patch(owner_id, timer_message_id=handle.message.message_id)
            except StoreError:
                await self._delete_message(handle.message)
                raise

        self._timers[owner_id] = handle
        handle.task = asyncio.create_task(
            self._run(handle, render_text, on_timeout), name=f"timer:{owner_id}"
        )
        logger.info(
            "Timer started for %s, %.0fs left", owner_id, handle.deadline_ts - now
        )
        return handle

    async def stop(self, owner_id: str) -> None:
        """Cancel the owner's countdown, drop its message and clear the deadline."""
        handle = self._timers.pop(owner_id, None)
        if handle is not None:
            handle.cancel()
            await self._wait(handle)

        state = await self._store.get(owner_id)
        if state is None:
            return
        if state.timer_message_id:
            await self._delete_message(MessageHandle(chat_id=owner_id, message_id=state.timer_message_id))
        state.timer_message_id = None
        state.deadline_ts = None
        await self._store.set(owner_id, state)

    async def discard(self, owner_id: str) -> None:
        """Cancel the owner's countdown and drop its message without touching the store."""
        handle = self._timers.pop(owner_id, None)
        if handle is None:
            return
        handle.cancel()
        await self._wait(handle)
        if handle.message is not None:
            await self._delete_message(handle.message)

    async def restore_all(
        self,
        sessions: Mapping[str, SessionState],
        duration_lookup: Callable[[SessionState], float],
        on_timeout: Callable[[str], Awaitable[None]],
        render_text: Callable[[str], Awaitable[str]],
    ) -> List[str]:
        """Resume the countdown of every in-progress session whose deadline is ahead."""
        restored: List[str] = []
        now = self._clock()
        for owner_id, state in sessions.items():
            if state.status != IN_PROGRESS or state.deadline_ts is None or state.deadline_ts <= now:
                continue
            handle = await self.start(
                owner_id,
                duration_lookup(state),
                partial(render_text, owner_id),
                partial(on_timeout, owner_id),
            )
            if handle is not None:
                restored.append(owner_id)
        if restored:
            logger.info("Restored %d running timers", len(restored))
        return restored

    async def shutdown(self) -> None:
        """Stop every loop but leave persisted deadlines for the next process."""
        handles = list(self._timers.values())
        self._timers.clear()
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await self._wait(handle)

    async def _run(self, handle: TimerHandle, render_text: RenderText, on_timeout: OnTimeout) -> None:
        try:
            while not handle.cancelled.is_set():
                await self._refresh(handle, render_text)
                if handle.cancelled.is_set():
                    return
                if self._clock() >= handle.deadline_ts:
                    handle.firing = True
                    logger.info("Time is up for %s", handle.owner_id)
                    try:
                        await on_timeout()
                    except Exception:
                        logger.exception("Timeout handler failed for %s", handle.owner_id)
                    return
                try:
                    await asyncio.wait_for(handle.cancelled.wait(), timeout=self._tick)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._timers.get(handle.owner_id) is handle:
                del self._timers[handle.owner_id]

    async def _refresh(self, handle: TimerHandle, render_text: RenderText) -> None:
        try:
            text = await render_text()
        except StoreError as exc:
            logger.warning("Failed to render timer text for %s: %s", handle.owner_id, exc)
            return
        if handle.message is None or not text:
            return
        try:
            await self._messenger.edit(handle.message, text)
        except MessageNotModified:
            pass
        except MessagingError as exc:
            logger.warning("Failed to edit timer message for %s: %s", handle.owner_id, exc)

    async def _wait(self, handle: TimerHandle) -> None:
        # A loop that is running its timeout callback may be waiting on the
        # very caller that is stopping it, so it is left to finish on its own.
        task = handle.task
        if task is None or task.done() or handle.firing or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    async def _patch(self, owner_id: str, **fields) -> None:
        state = await self._store.get(owner_id)
        if state is None:
            return
        for name, value in fields.items():
            setattr(state, name, value)
        await self._store.set(owner_id, state)

    async def _delete_message(self, message: MessageHandle) -> None:
        try:
            await self._messenger.delete(message)
        except MessagingError as exc:
            logger.warning("Failed to delete timer message %s: %s", message.message_id, exc)
