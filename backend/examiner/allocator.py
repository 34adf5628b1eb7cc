"""Question reservation for concurrently running candidate sessions."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Iterable, List, Optional

from .bank import QuestionBank
from .models import QuestionItem

logger = logging.getLogger(__name__)


class QuestionAllocator:
    """Owns the ``reserved_by`` flag of every item in the bank.

    A single lock covers each scan-and-mark pass, so two candidates never see
    the same free item.  When the free pool runs dry the allocator tops the
    request up with items reserved by *other* candidates and leaves their
    owner untouched: the request degrades instead of failing, and two
    candidates may end up sharing a question.
    """

    def __init__(self, bank: QuestionBank, rng: Optional[random.Random] = None):
        self._items = list(bank)
        self._lock = asyncio.Lock()
        self._rng = rng or random.Random()

    async def acquire(
        self, count: int, owner_id: str, category: Optional[str] = None
    ) -> List[QuestionItem]:
        async with self._lock:
            free: List[int] = []
            foreign: List[int] = []
            for idx, item in enumerate(self._items):
                if category is not None and item.category != category:
                    continue
                if not item.reserved_by:
                    free.append(idx)
                elif item.reserved_by != owner_id:
                    foreign.append(idx)

            if len(free) >= count:
                selected = self._sample(free, count)
            else:
                selected = list(free)
                shortfall = count - len(free)
                selected += self._sample(foreign, shortfall)
                logger.warning(
                    "Only %d free questions for %s (category=%s); borrowed %d reserved by other candidates",
                    len(free), owner_id, category, len(selected) - len(free),
                )

            result: List[QuestionItem] = []
            for idx in selected:
                item = self._items[idx]
                if not item.reserved_by:
                    item.reserved_by = owner_id
                result.append(item.model_copy(deep=True))
            return result

    async def release(self, owner_id: str) -> int:
        async with self._lock:
            released = 0
            for item in self._items:
                if item.reserved_by == owner_id:
                    item.reserved_by = ""
                    released += 1
        if released:
            logger.debug("Released %d questions held by %s", released, owner_id)
        return released

    async def reclaim(self, owner_id: str, question_ids: Iterable[int]) -> int:
        """Re-mark the still-free items among ``question_ids`` for ``owner_id``."""
        wanted = set(question_ids)
        async with self._lock:
            reclaimed = 0
            for item in self._items:
                if item.id in wanted and not item.reserved_by:
                    item.reserved_by = owner_id
                    reclaimed += 1
            return reclaimed

    async def held_by(self, owner_id: str) -> List[int]:
        async with self._lock:
            return [item.id for item in self._items if item.reserved_by == owner_id]

    async def free_count(self, category: Optional[str] = None) -> int:
        async with self._lock:
            return sum(
                1
                for item in self._items
                if not item.reserved_by and (category is None or item.category == category)
            )

    def _sample(self, indices: List[int], count: int) -> List[int]:
        shuffled = list(indices)
        self._rng.shuffle(shuffled)
        return shuffled[:max(0, count)]
