from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .allocator import QuestionAllocator
from .bank import QuestionBank
from .config import Settings
from .errors import (
    InvalidOption,
    MessagingError,
    NoActiveSession,
    NotAssigned,
    SessionAlreadyActive,
    StaleAnswer,
    StoreError,
    UnknownCategory,
)
from .messaging import MessageHandle, Messenger
from .models import FINISHED, IN_PROGRESS, PendingAssignment, SessionState, TestType
from .store import AssignmentStore, SessionStore
from .timer import TimerManager
from .utils import normalize_handle, now_ts, progress_text, question_text, summary_text

logger = logging.getLogger(__name__)

FinishHook = Callable[[SessionState], Awaitable[None]]

FINISHED_TEXT = "The test is finished. Thank you for your answers!"


@dataclass
class AnswerResult:
    state: SessionState
    is_correct: bool
    finished: bool


class SessionEngine:
    """Drives candidate sessions from assignment to finish.

    Actions for one candidate are serialized through a per-candidate lock;
    the allocator and the store each have their own lock and are never
    updated together atomically.
    """

    def __init__(
        self,
        bank: QuestionBank,
        allocator: QuestionAllocator,
        store: SessionStore,
        assignments: AssignmentStore,
        timers: TimerManager,
        messenger: Messenger,
        settings: Settings,
        test_types: Optional[Dict[str, TestType]] = None,
        on_finish: Optional[Sequence[FinishHook]] = None,
    ):
        self.bank = bank
        self.allocator = allocator
        self.store = store
        self.assignments = assignments
        self.timers = timers
        self.messenger = messenger
        self.settings = settings
        self.test_types = dict(test_types or {})
        self.on_finish: List[FinishHook] = list(on_finish or [])
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, candidate_id: str) -> asyncio.Lock:
        self.locks.setdefault(candidate_id, asyncio.Lock())
        return self.locks[candidate_id]

    def _limits(self, category: Optional[str]) -> Tuple[int, float]:
        count = self.settings.TEST_QUESTIONS
        duration = self.settings.test_duration_seconds
        test_type = self.test_types.get(category) if category else None
        if test_type is not None:
            if test_type.question_count is not None:
                count = test_type.question_count
            if test_type.duration_minutes is not None:
                duration = test_type.duration_minutes * 60
        return count, duration

    def duration_for(self, state: SessionState) -> float:
        return self._limits(state.category)[1]

    async def assign(
        self,
        candidate_handle: str,
        assigned_by: Optional[str] = None,
        assigned_by_id: Optional[str] = None,
        category: Optional[str] = None,
    ) -> PendingAssignment:
        if category is not None and category not in self.bank.categories():
            raise UnknownCategory(f"No questions in category {category!r}")
        assignment = await self.assignments.assign(
            candidate_handle,
            assigned_by=assigned_by,
            assigned_by_id=assigned_by_id,
            category=category,
        )
        logger.info(
            "Test (%s) assigned to @%s by %s",
            category or "any", assignment.candidate_handle, assigned_by or "unknown",
        )
        return assignment

    async def cancel_assignment(self, candidate_handle: str) -> bool:
        return await self.assignments.cancel(candidate_handle)

    async def start(self, candidate_id: str, candidate_handle: str) -> SessionState:
        async with self._lock(candidate_id):
            existing = await self.store.get(candidate_id)
            if existing is not None and existing.status == IN_PROGRESS:
                raise SessionAlreadyActive("A test is already in progress")

            assignment = await self.assignments.get(candidate_handle)
            if assignment is None:
                raise NotAssigned("No test has been assigned to you yet")

            count, duration = self._limits(assignment.category)
            questions = await self.allocator.acquire(count, candidate_id, assignment.category)

            started_at = now_ts()
            state = SessionState(
                candidate_id=candidate_id,
                status=IN_PROGRESS,
                questions=questions,
                deadline_ts=started_at + duration,
                candidate_handle=normalize_handle(candidate_handle),
                assigned_by=assignment.assigned_by,
                assigned_by_id=assignment.assigned_by_id,
                category=assignment.category,
                started_at=started_at,
            )
            try:
                await self.store.set(candidate_id, state)
            except StoreError:
                await self.allocator.release(candidate_id)
                raise

            if not questions:
                final = await self._finish_locked(candidate_id)
                await self.assignments.claim(candidate_handle)
                return final or state

            try:
                await self.timers.start(
                    candidate_id,
                    duration,
                    partial(self.progress_text, candidate_id),
                    partial(self._expire, candidate_id, started_at),
                )
                await self._send_question(candidate_id)
                # the assignment is only consumed once the session is fully running
                await self.assignments.claim(candidate_handle)
            except Exception:
                await self._abort_start(candidate_id, existing)
                raise

            logger.info(
                "Session started for %s: %d questions, %.0fs", candidate_id, len(questions), duration
            )
            return await self.store.get(candidate_id) or state

    async def submit_answer(self, candidate_id: str, question_index: int, option_index: int) -> AnswerResult:
        async with self._lock(candidate_id):
            state = await self.store.get(candidate_id)
            if state is None or state.status != IN_PROGRESS:
                raise NoActiveSession("You have no test in progress")

            if not 0 <= question_index < state.total_questions:
                raise StaleAnswer(f"Question {question_index} is out of range")
            if question_index != state.current_question:
                raise StaleAnswer(f"Question {question_index} is not the current question")

            question = state.questions[question_index]
            if not 0 <= option_index < len(question.options):
                raise InvalidOption(f"Option {option_index} is out of range")

            is_correct = option_index == question.answer
            state.answers[question_index] = option_index
            if is_correct:
                state.score += 1
            state.current_question += 1
            old_message_id = state.question_message_id
            state.question_message_id = None
            await self.store.set(candidate_id, state)

            if old_message_id:
                await self._delete_message(candidate_id, old_message_id)

            if state.current_question >= state.total_questions:
                final = await self._finish_locked(candidate_id)
                return AnswerResult(state=final or state, is_correct=is_correct, finished=True)

            await self._send_question(candidate_id)
            return AnswerResult(state=state, is_correct=is_correct, finished=False)

    async def finish(self, candidate_id: str) -> Optional[SessionState]:
        async with self._lock(candidate_id):
            return await self._finish_locked(candidate_id)

    async def get_session(self, candidate_id: str) -> Optional[SessionState]:
        return await self.store.get(candidate_id)

    async def progress_text(self, candidate_id: str) -> str:
        state = await self.store.get(candidate_id)
        if state is None:
            return ""
        return progress_text(state)

    async def restore(self) -> List[str]:
        """Resume sessions that were in progress when the process last stopped."""
        sessions = await self.store.load_all()
        now = now_ts()
        running: Dict[str, SessionState] = {}
        for candidate_id, state in sessions.items():
            if state.status != IN_PROGRESS:
                continue
            await self.allocator.reclaim(candidate_id, [q.id for q in state.questions])
            if state.deadline_ts is None or state.deadline_ts <= now:
                logger.info("Session for %s expired while offline, finishing", candidate_id)
                await self.finish(candidate_id)
                continue
            running[candidate_id] = state
        return await self.timers.restore_all(
            running, self.duration_for, self._expire, self.progress_text
        )

    async def shutdown(self) -> None:
        await self.timers.shutdown()

    async def _expire(self, candidate_id: str, started_at: Optional[float] = None) -> None:
        async with self._lock(candidate_id):
            state = await self.store.get(candidate_id)
            if state is None or state.status != IN_PROGRESS:
                return
            # a timer left over from an earlier session must not end a newer one
            if started_at is not None and state.started_at != started_at:
                return
            await self._finish_locked(candidate_id)

    async def _abort_start(self, candidate_id: str, previous: Optional[SessionState]) -> None:
        """Undo a start that failed part way, leaving the candidate free to retry."""
        await self.timers.discard(candidate_id)
        await self.allocator.release(candidate_id)
        try:
            current = await self.store.get(candidate_id)
            if current is not None and current.question_message_id:
                await self._delete_message(candidate_id, current.question_message_id)
            if previous is None:
                await self.store.delete(candidate_id)
            else:
                await self.store.set(candidate_id, previous)
        except StoreError as exc:
            logger.error("Could not roll back the session record for %s: %s", candidate_id, exc)
        logger.warning("Session start for %s aborted", candidate_id)

    async def _finish_locked(self, candidate_id: str) -> Optional[SessionState]:
        state = await self.store.get(candidate_id)
        if state is None:
            return None
        if state.status == FINISHED:
            return state

        await self.allocator.release(candidate_id)
        await self.timers.stop(candidate_id)

        state = await self.store.get(candidate_id)
        if state is None:
            return None
        old_message_id = state.question_message_id
        state.status = FINISHED
        state.finished_at = now_ts()
        state.question_message_id = None
        await self.store.set(candidate_id, state)
        logger.info(
            "Session finished for %s: %d/%d correct", candidate_id, state.score, state.total_questions
        )

        if old_message_id:
            await self._delete_message(candidate_id, old_message_id)
        try:
            await self.messenger.send(candidate_id, FINISHED_TEXT)
        except MessagingError as exc:
            logger.warning("Failed to send closing message to %s: %s", candidate_id, exc)

        for hook in self.on_finish:
            try:
                await hook(state)
            except Exception:
                logger.exception("Finish hook failed for %s", candidate_id)
        return state

    async def _send_question(self, candidate_id: str) -> None:
        state = await self.store.get(candidate_id)
        if state is None or state.current_question >= state.total_questions:
            return
        question = state.questions[state.current_question]
        try:
            message = await self.messenger.send(
                candidate_id,
                question_text(question, state.current_question),
                question.options,
            )
        except MessagingError as exc:
            logger.warning("Failed to send question to %s: %s", candidate_id, exc)
            return
        state.question_message_id = message.message_id
        await self.store.set(candidate_id, state)

    async def _delete_message(self, candidate_id: str, message_id: str) -> None:
        try:
            await self.messenger.delete(MessageHandle(chat_id=candidate_id, message_id=message_id))
        except MessagingError as exc:
            logger.warning("Failed to delete message %s for %s: %s", message_id, candidate_id, exc)


def notify_assigner(messenger: Messenger) -> FinishHook:
    """Finish hook that tells the assigning party how the candidate did."""

    async def notify(state: SessionState) -> None:
        if not state.assigned_by_id:
            return
        try:
            await messenger.send(state.assigned_by_id, summary_text(state))
        except MessagingError as exc:
            logger.warning("Failed to notify %s about %s: %s", state.assigned_by_id, state.candidate_id, exc)

    return notify
