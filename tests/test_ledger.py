"""Queue ledger tests: enqueue, cancel, rank and the Redis rank index."""

from datetime import datetime, timedelta, timezone

import pytest

from booth_waiting.errors import (
    AlreadyWaiting,
    BoothClosed,
    InvalidState,
    NotFound,
    TooManyConcurrentWaits,
)
from booth_waiting.models import BoothStatus, CompletionType, WaitingStatus
from booth_waiting.redis import booth_queue_key

T0 = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)


class TestEnqueue:
    """Joining a booth's queue."""

    @pytest.mark.asyncio
    async def test_ranks_follow_arrival_order(self, ledger, make_booth, make_user):
        booth = await make_booth()
        users = [await make_user() for _ in range(3)]

        entries = [
            await ledger.enqueue(booth.id, u.id, now=T0 + timedelta(seconds=i))
            for i, u in enumerate(users)
        ]

        assert [await ledger.rank(w) for w in entries] == [1, 2, 3]
        assert [w.sequence for w in entries] == [1, 2, 3]
        assert await ledger.total_waiting(booth.id) == 3
        assert all(w.status == WaitingStatus.WAITING for w in entries)

    @pytest.mark.asyncio
    async def test_closed_booth_rejects(self, ledger, make_booth, make_user):
        booth = await make_booth(status=BoothStatus.CLOSED)
        user = await make_user()

        with pytest.raises(BoothClosed):
            await ledger.enqueue(booth.id, user.id, now=T0)
        assert await ledger.total_waiting(booth.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_booth(self, ledger, make_user):
        user = await make_user()
        with pytest.raises(NotFound):
            await ledger.enqueue(9999, user.id, now=T0)

    @pytest.mark.asyncio
    async def test_second_entry_at_same_booth_rejected(self, ledger, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        await ledger.enqueue(booth.id, user.id, now=T0)

        with pytest.raises(AlreadyWaiting):
            await ledger.enqueue(booth.id, user.id, now=T0)
        assert await ledger.total_waiting(booth.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_wait_cap(self, ledger, make_booth, make_user):
        booths = [await make_booth(name=f"Booth {i}") for i in range(3)]
        user = await make_user()
        await ledger.enqueue(booths[0].id, user.id, now=T0)
        await ledger.enqueue(booths[1].id, user.id, now=T0)

        with pytest.raises(TooManyConcurrentWaits) as exc_info:
            await ledger.enqueue(booths[2].id, user.id, now=T0)
        assert exc_info.value.details["limit"] == 2
        assert await ledger.total_waiting(booths[2].id) == 0

    @pytest.mark.asyncio
    async def test_cap_frees_up_after_cancel(self, ledger, make_booth, make_user):
        booths = [await make_booth(name=f"Booth {i}") for i in range(3)]
        user = await make_user()
        await ledger.enqueue(booths[0].id, user.id, now=T0)
        await ledger.enqueue(booths[1].id, user.id, now=T0)
        await ledger.cancel(booths[0].id, user.id, now=T0)

        waiting = await ledger.enqueue(booths[2].id, user.id, now=T0)
        assert await ledger.rank(waiting) == 1

    @pytest.mark.asyncio
    async def test_rejoin_after_cancel_goes_to_the_back(self, ledger, make_booth, make_user):
        booth = await make_booth()
        first, second = await make_user(), await make_user()
        await ledger.enqueue(booth.id, first.id, now=T0)
        await ledger.enqueue(booth.id, second.id, now=T0)
        await ledger.cancel(booth.id, first.id, now=T0)

        again = await ledger.enqueue(booth.id, first.id, now=T0)
        assert again.sequence == 3
        assert await ledger.rank(again) == 2


class TestCancel:
    """Leaving a queue before being called."""

    @pytest.mark.asyncio
    async def test_cancel_shifts_everyone_behind(self, ledger, make_booth, make_user):
        booth = await make_booth()
        a, b, c = [await make_user() for _ in range(3)]
        wa = await ledger.enqueue(booth.id, a.id, now=T0)
        await ledger.enqueue(booth.id, b.id, now=T0)
        wc = await ledger.enqueue(booth.id, c.id, now=T0)

        cancelled = await ledger.cancel(booth.id, b.id, now=T0 + timedelta(minutes=1))

        assert cancelled.status == WaitingStatus.CANCELLED
        assert cancelled.completion_type == CompletionType.CANCELLED
        assert cancelled.completed_at is not None
        assert await ledger.rank(wa) == 1
        assert await ledger.rank(wc) == 2
        assert await ledger.total_waiting(booth.id) == 2

    @pytest.mark.asyncio
    async def test_cancel_without_entry(self, ledger, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        with pytest.raises(NotFound):
            await ledger.cancel(booth.id, user.id, now=T0)

    @pytest.mark.asyncio
    async def test_called_entry_cannot_cancel(self, ledger, machine, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        await ledger.enqueue(booth.id, user.id, now=T0)
        await machine.call_next(booth.id, now=T0)

        with pytest.raises(InvalidState):
            await ledger.cancel(booth.id, user.id, now=T0)


class TestPosition:
    """Rank, position and wait estimates."""

    @pytest.mark.asyncio
    async def test_position_of(self, ledger, make_booth, make_user):
        booth = await make_booth()
        a, b = await make_user(), await make_user()
        await ledger.enqueue(booth.id, a.id, now=T0)
        await ledger.enqueue(booth.id, b.id, now=T0)

        assert await ledger.position_of(booth.id, b.id) == 2

    @pytest.mark.asyncio
    async def test_position_without_entry(self, ledger, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        with pytest.raises(NotFound):
            await ledger.position_of(booth.id, user.id)

    @pytest.mark.asyncio
    async def test_called_entry_has_rank_zero(self, ledger, machine, make_booth, make_user):
        booth = await make_booth()
        a, b = await make_user(), await make_user()
        await ledger.enqueue(booth.id, a.id, now=T0)
        wb = await ledger.enqueue(booth.id, b.id, now=T0)

        called = await machine.call_next(booth.id, now=T0)

        assert await ledger.rank(called) == 0
        assert await ledger.rank(wb) == 1
        assert await ledger.total_waiting(booth.id) == 1

    @pytest.mark.asyncio
    async def test_estimate_uses_default_experience(self, ledger, make_booth):
        booth = await make_booth(capacity=2)
        # 3 ahead * 5 minutes / 2 slots
        assert await ledger.estimate_wait_minutes(booth, 3) == 8
        assert await ledger.estimate_wait_minutes(booth, 0) == 0

    @pytest.mark.asyncio
    async def test_estimate_learns_from_completed_visits(
        self, ledger, machine, make_booth, make_user
    ):
        booth = await make_booth(capacity=1)
        user = await make_user()
        await ledger.enqueue(booth.id, user.id, now=T0)
        waiting = await machine.call_next(booth.id, now=T0)
        await machine.confirm_entrance(booth.id, waiting.id, now=T0 + timedelta(minutes=1))
        await machine.complete_experience(booth.id, waiting.id, now=T0 + timedelta(minutes=11))

        assert await ledger.estimate_wait_minutes(booth, 2) == 20

    @pytest.mark.asyncio
    async def test_snapshot_of_called_entry(self, ledger, machine, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        await ledger.enqueue(booth.id, user.id, now=T0)
        called = await machine.call_next(booth.id, now=T0)

        snapshot = await ledger.snapshot(called, now=T0 + timedelta(seconds=100))

        assert snapshot.position == 0
        assert snapshot.remaining_time == 200
        assert snapshot.estimated_wait_time == 0

    @pytest.mark.asyncio
    async def test_my_waitings_lists_active_entries(self, ledger, make_booth, make_user):
        first, second = await make_booth(name="A"), await make_booth(name="B")
        user = await make_user()
        await ledger.enqueue(first.id, user.id, now=T0)
        await ledger.enqueue(second.id, user.id, now=T0 + timedelta(seconds=1))

        snapshots = await ledger.my_waitings(user.id, now=T0)

        assert [s.entry.booth_id for s in snapshots] == [first.id, second.id]
        assert all(s.position == 1 for s in snapshots)


class TestRankIndex:
    """The Redis sorted set mirrors the WAITING rows."""

    @pytest.mark.asyncio
    async def test_rank_falls_back_to_database(self, ledger, redis_client, make_booth, make_user):
        booth = await make_booth()
        a, b = await make_user(), await make_user()
        await ledger.enqueue(booth.id, a.id, now=T0)
        wb = await ledger.enqueue(booth.id, b.id, now=T0)

        await redis_client.delete(booth_queue_key(booth.id))

        assert await ledger.rank(wb) == 2

    @pytest.mark.asyncio
    async def test_reconcile_rebuilds_lost_index(
        self, ledger, machine, redis_client, make_booth, make_user
    ):
        booth = await make_booth()
        users = [await make_user() for _ in range(3)]
        for u in users:
            await ledger.enqueue(booth.id, u.id, now=T0)
        await machine.call_next(booth.id, now=T0)
        await redis_client.flushall()

        indexed = await ledger.reconcile()

        assert indexed == 2
        assert await ledger.total_waiting(booth.id) == 2
        assert await ledger.position_of(booth.id, users[2].id) == 2

    @pytest.mark.asyncio
    async def test_reconcile_drops_stale_members(self, ledger, redis_client, make_booth, make_user):
        booth = await make_booth()
        user = await make_user()
        await ledger.enqueue(booth.id, user.id, now=T0)
        await redis_client.zadd(booth_queue_key(booth.id), {"424242": 0})

        await ledger.reconcile(booth.id)

        assert await ledger.total_waiting(booth.id) == 1
        assert await ledger.position_of(booth.id, user.id) == 1
