import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import redis.asyncio as redis
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.config import Settings, settings as default_settings
from booth_waiting.errors import (
    AlreadyWaiting,
    BoothClosed,
    InvalidState,
    NoOneWaiting,
    NotFound,
    StorageUnavailable,
    TooManyConcurrentWaits,
)
from booth_waiting.locks import KeyedLock, booth_locks, visitor_locks
from booth_waiting.models import (
    ACTIVE_STATUSES,
    Booth,
    CompletionType,
    Waiting,
    WaitingStatus,
)
from booth_waiting.redis import booth_queue_key, redis_execute
from booth_waiting.registry import BoothRegistry
from booth_waiting.timeutil import as_utc, utcnow
from booth_waiting.transitions import Event, compare_and_set

logger = logging.getLogger(__name__)

EXPERIENCE_SAMPLE_SIZE = 20


@dataclass
class WaitingSnapshot:
    entry: Waiting
    position: int
    total_waiting: int
    estimated_wait_time: int
    remaining_time: Optional[int] = None


class QueueLedger:
    """Per-booth FIFO of WAITING entries.

    The database row is authoritative. Each booth also has a Redis sorted set
    of its WAITING ids scored by enqueue sequence, which answers rank and
    length reads without renumbering anything on dequeue.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis_client: redis.Redis,
        settings: Settings = default_settings,
        booth_lock: KeyedLock = booth_locks,
        visitor_lock: KeyedLock = visitor_locks,
    ):
        self.db = db
        self.redis = redis_client
        self.settings = settings
        self.booth_lock = booth_lock
        self.visitor_lock = visitor_lock
        self.registry = BoothRegistry(db, settings)

    async def enqueue(self, booth_id: int, user_id: int, now: Optional[datetime] = None) -> Waiting:
        now = now or utcnow()
        async with self.visitor_lock.hold(user_id), self.booth_lock.hold(booth_id):
            if not await self.registry.is_open(booth_id):
                raise BoothClosed(boothId=booth_id)

            active = await self.active_entries(user_id)
            if any(w.booth_id == booth_id for w in active):
                raise AlreadyWaiting(boothId=booth_id)
            if len(active) >= self.settings.max_concurrent_waits:
                raise TooManyConcurrentWaits(
                    limit=self.settings.max_concurrent_waits,
                    boothIds=[w.booth_id for w in active],
                )

            waiting = Waiting(
                booth_id=booth_id,
                user_id=user_id,
                sequence=await self.registry.take_sequence(booth_id),
                status=WaitingStatus.WAITING,
                registered_at=now,
            )
            self.db.add(waiting)
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                # only the one-active-entry index can collide; sequences are unique
                if await self.active_entry(booth_id, user_id) is not None:
                    raise AlreadyWaiting(boothId=booth_id)
                raise

            await self.commit_with_index(booth_id, added=waiting)
            logger.info(
                f"User {user_id} waiting at booth {booth_id} (waiting {waiting.id}, seq {waiting.sequence})"
            )
            return waiting

    async def cancel(self, booth_id: int, user_id: int, now: Optional[datetime] = None) -> Waiting:
        now = now or utcnow()
        async with self.booth_lock.hold(booth_id):
            waiting = await self.active_entry(booth_id, user_id)
            if waiting is None:
                raise NotFound("Waiting not found", boothId=booth_id)
            if waiting.status != WaitingStatus.WAITING:
                raise InvalidState(waitingId=waiting.id, status=waiting.status.value)

            applied = await compare_and_set(
                self.db,
                waiting.id,
                Event.CANCEL,
                completed_at=now,
                completion_type=CompletionType.CANCELLED,
            )
            if not applied:
                await self.db.rollback()
                await self.db.refresh(waiting)
                raise InvalidState(waitingId=waiting.id, status=waiting.status.value)

            await self.commit_with_index(booth_id, removed=waiting)
            await self.db.refresh(waiting)
            logger.info(f"User {user_id} cancelled waiting {waiting.id} at booth {booth_id}")
            return waiting

    async def dequeue_head(self, booth_id: int, called_at: datetime) -> Waiting:
        """Mark the lowest-sequence WAITING entry CALLED.

        The caller holds the booth lock and commits through ``commit_with_index``.
        """
        while True:
            result = await self.db.execute(
                select(Waiting.id)
                .where(Waiting.booth_id == booth_id, Waiting.status == WaitingStatus.WAITING)
                .order_by(Waiting.sequence)
                .limit(1)
            )
            head_id = result.scalar_one_or_none()
            if head_id is None:
                raise NoOneWaiting(boothId=booth_id)
            # a cancel from another process may win the head; try the next one
            if await compare_and_set(self.db, head_id, Event.CALL, called_at=called_at):
                waiting = await self.db.get(Waiting, head_id, populate_existing=True)
                return waiting

    async def position_of(self, booth_id: int, user_id: int) -> int:
        waiting = await self.active_entry(booth_id, user_id)
        if waiting is None:
            raise NotFound("Waiting not found", boothId=booth_id)
        return await self.rank(waiting)

    async def rank(self, waiting: Waiting) -> int:
        """1-based rank among WAITING entries; 0 once the entry has been called."""
        if waiting.status != WaitingStatus.WAITING:
            return 0
        index = await redis_execute(
            self.redis, "zrank", booth_queue_key(waiting.booth_id), str(waiting.id)
        )
        if index is not None:
            return index + 1
        logger.warning(f"Waiting {waiting.id} missing from rank index, counting in DB")
        return await self._count_ahead(waiting) + 1

    async def total_waiting(self, booth_id: int) -> int:
        return await redis_execute(self.redis, "zcard", booth_queue_key(booth_id))

    async def active_entry(self, booth_id: int, user_id: int) -> Optional[Waiting]:
        result = await self.db.execute(
            select(Waiting)
            .where(
                Waiting.booth_id == booth_id,
                Waiting.user_id == user_id,
                Waiting.status.in_(ACTIVE_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def active_entries(self, user_id: int) -> List[Waiting]:
        result = await self.db.execute(
            select(Waiting)
            .where(Waiting.user_id == user_id, Waiting.status.in_(ACTIVE_STATUSES))
            .order_by(Waiting.registered_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def called_list(self, booth_id: int) -> List[Waiting]:
        """Entries staff still have to act on: called but not entered, or inside."""
        result = await self.db.execute(
            select(Waiting)
            .where(
                Waiting.booth_id == booth_id,
                Waiting.status.in_((WaitingStatus.CALLED, WaitingStatus.ENTERED)),
            )
            .order_by(Waiting.sequence)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def snapshot(self, waiting: Waiting, now: Optional[datetime] = None) -> WaitingSnapshot:
        booth = await self.registry.get(waiting.booth_id)
        position = await self.rank(waiting)
        total = await self.total_waiting(waiting.booth_id)
        remaining = None
        if waiting.status == WaitingStatus.CALLED:
            remaining = self.remaining_seconds(waiting, now or utcnow())
        return WaitingSnapshot(
            entry=waiting,
            position=position,
            total_waiting=total,
            estimated_wait_time=await self.estimate_wait_minutes(booth, position),
            remaining_time=remaining,
        )

    async def my_waitings(self, user_id: int, now: Optional[datetime] = None) -> List[WaitingSnapshot]:
        return [await self.snapshot(w, now) for w in await self.active_entries(user_id)]

    def remaining_seconds(self, waiting: Waiting, now: datetime) -> int:
        deadline = as_utc(waiting.called_at) + timedelta(seconds=self.settings.call_timeout_seconds)
        return max(0, math.ceil((deadline - as_utc(now)).total_seconds()))

    async def estimate_wait_minutes(self, booth: Booth, rank: int) -> int:
        if rank <= 0:
            return 0
        average = await self._average_experience_minutes(booth.id)
        return math.ceil(rank * average / max(booth.capacity, 1))

    async def commit_with_index(
        self,
        booth_id: int,
        added: Optional[Waiting] = None,
        removed: Optional[Waiting] = None,
    ) -> None:
        """Mirror the pending change into the booth's sorted set, then commit.

        A Redis failure rolls the database back. A failed commit undoes the
        Redis change on a best-effort basis; ``reconcile`` repairs the rest.
        """
        key = booth_queue_key(booth_id)
        # rollback expires ORM state, so keep plain members around
        add = {str(added.id): added.sequence} if added is not None else None
        remove = {str(removed.id): removed.sequence} if removed is not None else None
        try:
            if add:
                await redis_execute(self.redis, "zadd", key, add)
            if remove:
                await redis_execute(self.redis, "zrem", key, *remove)
        except StorageUnavailable:
            await self.db.rollback()
            raise

        try:
            await self.db.commit()
        except Exception:
            logger.exception(f"Commit failed for booth {booth_id}, undoing rank index change")
            await self.db.rollback()
            try:
                if add:
                    await self.redis.zrem(key, *add)
                if remove:
                    await self.redis.zadd(key, remove)
            except Exception:
                logger.exception(f"Rank index of booth {booth_id} left stale until reconcile")
            raise

    async def reconcile(self, booth_id: Optional[int] = None) -> int:
        """Rebuild the sorted sets from the database. Returns entries indexed."""
        if booth_id is None:
            result = await self.db.execute(select(Booth.id).order_by(Booth.id))
            booth_ids = list(result.scalars().all())
        else:
            booth_ids = [booth_id]

        indexed = 0
        for bid in booth_ids:
            async with self.booth_lock.hold(bid):
                result = await self.db.execute(
                    select(Waiting.id, Waiting.sequence).where(
                        Waiting.booth_id == bid, Waiting.status == WaitingStatus.WAITING
                    )
                )
                mapping = {str(wid): seq for wid, seq in result.all()}
                key = booth_queue_key(bid)
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.delete(key)
                    if mapping:
                        pipe.zadd(key, mapping)
                    await pipe.execute()
                # end the read transaction before releasing the booth
                await self.db.commit()
                indexed += len(mapping)
        return indexed

    async def _count_ahead(self, waiting: Waiting) -> int:
        result = await self.db.execute(
            select(func.count(Waiting.id)).where(
                Waiting.booth_id == waiting.booth_id,
                Waiting.status == WaitingStatus.WAITING,
                Waiting.sequence < waiting.sequence,
            )
        )
        return result.scalar_one()

    async def _average_experience_minutes(self, booth_id: int) -> float:
        result = await self.db.execute(
            select(Waiting.entered_at, Waiting.completed_at)
            .where(Waiting.booth_id == booth_id, Waiting.status == WaitingStatus.COMPLETED)
            .order_by(Waiting.completed_at.desc())
            .limit(EXPERIENCE_SAMPLE_SIZE)
        )
        durations = [
            (as_utc(completed) - as_utc(entered)).total_seconds() / 60
            for entered, completed in result.all()
            if entered is not None and completed is not None
        ]
        if not durations:
            return float(self.settings.default_experience_minutes)
        return sum(durations) / len(durations)
