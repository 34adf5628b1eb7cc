from __future__ import annotations

import asyncio
import random
from unittest import IsolatedAsyncioTestCase

from .allocator import QuestionAllocator
from .bank import QuestionBank
from .models import QuestionItem


def _bank(count: int = 10, category: str | None = None, start: int = 1) -> list[QuestionItem]:
    return [
        QuestionItem(
            id=i,
            text=f"Question {i}",
            options=["Yes", "No", "Not sure"],
            answer=i % 3,
            category=category,
        )
        for i in range(start, start + count)
    ]


class AcquireTests(IsolatedAsyncioTestCase):
    async def test_single_owner_gets_distinct_reserved_items(self):
        allocator = QuestionAllocator(QuestionBank(_bank(10)), rng=random.Random(1))

        selected = await allocator.acquire(5, "cand1")

        self.assertEqual(len(selected), 5)
        self.assertEqual(len({q.id for q in selected}), 5)
        self.assertTrue(all(q.reserved_by == "cand1" for q in selected))
        self.assertEqual(sorted(await allocator.held_by("cand1")), sorted(q.id for q in selected))
        self.assertEqual(await allocator.free_count(), 5)

    async def test_distinct_owners_never_share_items_when_pool_suffices(self):
        allocator = QuestionAllocator(QuestionBank(_bank(10)))

        first = await allocator.acquire(5, "cand1")
        second = await allocator.acquire(5, "cand2")

        self.assertFalse({q.id for q in first} & {q.id for q in second})
        self.assertTrue(all(q.reserved_by == "cand2" for q in second))

    async def test_concurrent_acquires_are_exclusive(self):
        allocator = QuestionAllocator(QuestionBank(_bank(20)))

        results = await asyncio.gather(*(allocator.acquire(2, f"cand{i}") for i in range(10)))

        ids = [q.id for result in results for q in result]
        self.assertEqual(len(ids), 20)
        self.assertEqual(len(set(ids)), 20)
        for i, result in enumerate(results):
            self.assertTrue(all(q.reserved_by == f"cand{i}" for q in result))

    async def test_scarcity_borrows_foreign_items_without_changing_owner(self):
        items = _bank(3, category="logic") + _bank(4, category="math", start=10)
        allocator = QuestionAllocator(QuestionBank(items))

        first = await allocator.acquire(3, "cand1", "logic")
        self.assertEqual(sorted(q.id for q in first), [1, 2, 3])
        self.assertTrue(all(q.reserved_by == "cand1" for q in first))

        second = await allocator.acquire(1, "cand2", "logic")

        self.assertEqual(len(second), 1)
        self.assertIn(second[0].id, {1, 2, 3})
        self.assertEqual(second[0].reserved_by, "cand1")
        self.assertEqual(sorted(await allocator.held_by("cand1")), [1, 2, 3])
        self.assertEqual(await allocator.held_by("cand2"), [])

    async def test_partial_free_pool_is_taken_before_borrowing(self):
        allocator = QuestionAllocator(QuestionBank(_bank(4)))
        taken = await allocator.acquire(3, "cand1")

        second = await allocator.acquire(3, "cand2")

        free_id = ({1, 2, 3, 4} - {q.id for q in taken}).pop()
        self.assertEqual(len(second), 3)
        self.assertIn(free_id, [q.id for q in second])
        self.assertEqual(await allocator.held_by("cand2"), [free_id])

    async def test_returns_what_exists_when_bank_is_too_small(self):
        allocator = QuestionAllocator(QuestionBank(_bank(3)))

        selected = await allocator.acquire(5, "cand1")

        self.assertEqual(len(selected), 3)

    async def test_category_filter(self):
        items = _bank(3, category="logic") + _bank(3, category="math", start=10)
        allocator = QuestionAllocator(QuestionBank(items))

        selected = await allocator.acquire(3, "cand1", "math")

        self.assertEqual({q.category for q in selected}, {"math"})
        self.assertEqual(await allocator.free_count("logic"), 3)

    async def test_own_reservations_are_not_handed_out_twice(self):
        allocator = QuestionAllocator(QuestionBank(_bank(3)))
        await allocator.acquire(3, "cand1")

        again = await allocator.acquire(2, "cand1")

        self.assertEqual(again, [])

    async def test_content_is_never_changed(self):
        items = _bank(5)
        originals = [(q.id, q.text, list(q.options), q.answer) for q in items]
        allocator = QuestionAllocator(QuestionBank(items))

        await allocator.acquire(5, "cand1")
        await allocator.acquire(5, "cand2")
        await allocator.release("cand1")

        self.assertEqual([(q.id, q.text, list(q.options), q.answer) for q in items], originals)


class ReleaseTests(IsolatedAsyncioTestCase):
    async def test_release_frees_everything_owned(self):
        allocator = QuestionAllocator(QuestionBank(_bank(6)))
        await allocator.acquire(3, "cand1")
        await allocator.acquire(3, "cand2")

        released = await allocator.release("cand1")

        self.assertEqual(released, 3)
        self.assertEqual(await allocator.held_by("cand1"), [])
        self.assertEqual(len(await allocator.held_by("cand2")), 3)
        self.assertEqual(await allocator.free_count(), 3)

    async def test_release_is_idempotent(self):
        allocator = QuestionAllocator(QuestionBank(_bank(6)))
        await allocator.acquire(3, "cand1")

        self.assertEqual(await allocator.release("cand1"), 3)
        self.assertEqual(await allocator.release("cand1"), 0)
        self.assertEqual(await allocator.release("nobody"), 0)
        self.assertEqual(await allocator.free_count(), 6)

    async def test_released_items_are_visible_to_next_acquire(self):
        allocator = QuestionAllocator(QuestionBank(_bank(3)))
        await allocator.acquire(3, "cand1")
        await allocator.release("cand1")

        selected = await allocator.acquire(3, "cand2")

        self.assertTrue(all(q.reserved_by == "cand2" for q in selected))

    async def test_random_sequences_keep_single_ownership(self):
        rng = random.Random(42)
        items = _bank(12)
        allocator = QuestionAllocator(QuestionBank(items), rng=random.Random(7))
        owners = [f"cand{i}" for i in range(5)]
        held: dict[str, set[int]] = {o: set() for o in owners}

        for _ in range(200):
            owner = rng.choice(owners)
            if rng.random() < 0.6:
                before_free = {q.id for q in items if not q.reserved_by}
                for q in await allocator.acquire(rng.randint(1, 4), owner):
                    if q.id in before_free:
                        held[owner].add(q.id)
            else:
                await allocator.release(owner)
                held[owner].clear()

            for o in owners:
                self.assertEqual(set(await allocator.held_by(o)), held[o])
            all_held = [i for ids in held.values() for i in ids]
            self.assertEqual(len(all_held), len(set(all_held)))

    async def test_reclaim_marks_only_free_items(self):
        allocator = QuestionAllocator(QuestionBank(_bank(4)))
        await allocator.acquire(1, "cand2")
        taken = (await allocator.held_by("cand2"))[0]

        reclaimed = await allocator.reclaim("cand1", [1, 2, 3, 4])

        self.assertEqual(reclaimed, 3)
        self.assertEqual(await allocator.held_by("cand2"), [taken])
        self.assertNotIn(taken, await allocator.held_by("cand1"))
