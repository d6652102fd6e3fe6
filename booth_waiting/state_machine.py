import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.config import Settings, settings as default_settings
from booth_waiting.errors import BoothFull, CapacityExceeded, InvalidState, NotFound
from booth_waiting.ledger import QueueLedger
from booth_waiting.locks import KeyedLock, booth_locks, visitor_locks
from booth_waiting.models import CompletionType, Waiting, WaitingStatus
from booth_waiting.stats import StatEvent, StatsAggregator
from booth_waiting.timeutil import utcnow
from booth_waiting.transitions import Event, compare_and_set

logger = logging.getLogger(__name__)


class WaitingStateMachine:
    """Drives a waiting through CALLED, ENTERED and its terminal state.

    Staff transitions run inside the booth's critical section so the capacity
    check and the call that depends on it are atomic. ``expire`` only relies
    on the status compare-and-set, which is what lets the sweeper race a
    staff confirmation safely: whichever commits first wins.
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
        self.settings = settings
        self.booth_lock = booth_lock
        self.ledger = QueueLedger(db, redis_client, settings, booth_lock, visitor_lock)
        self.registry = self.ledger.registry
        self.stats = StatsAggregator(db, settings)

    async def call_next(self, booth_id: int, now: Optional[datetime] = None) -> Waiting:
        now = now or utcnow()
        async with self.booth_lock.hold(booth_id):
            await self.registry.get(booth_id)
            if await self.registry.call_slots(booth_id) <= 0:
                raise BoothFull(boothId=booth_id)

            try:
                waiting = await self.ledger.dequeue_head(booth_id, called_at=now)
                await self.stats.record(booth_id, StatEvent.CALLED, now)
            except Exception:
                await self.db.rollback()
                raise
            await self.ledger.commit_with_index(booth_id, removed=waiting)

            logger.info(f"Booth {booth_id} called waiting {waiting.id} (seq {waiting.sequence})")
            return waiting

    async def confirm_entrance(
        self, booth_id: int, waiting_id: int, now: Optional[datetime] = None
    ) -> Waiting:
        now = now or utcnow()
        async with self.booth_lock.hold(booth_id):
            waiting = await self._get(booth_id, waiting_id)
            self._require(waiting, WaitingStatus.CALLED)

            if not self.settings.allow_late_confirm and self.ledger.remaining_seconds(waiting, now) <= 0:
                await self.expire(waiting_id, booth_id, now)
                raise InvalidState(
                    "Call deadline has passed",
                    waitingId=waiting_id,
                    status=WaitingStatus.NO_SHOW.value,
                )
            if not await self.registry.has_capacity(booth_id):
                raise CapacityExceeded(boothId=booth_id)

            if not await compare_and_set(self.db, waiting.id, Event.ENTER, entered_at=now):
                await self._lost_race(waiting)
            try:
                await self.registry.increment_occupancy(booth_id)
                await self.stats.record(booth_id, StatEvent.ENTERED, now)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            await self.db.refresh(waiting)
            logger.info(f"Waiting {waiting.id} entered booth {booth_id}")
            return waiting

    async def complete_experience(
        self, booth_id: int, waiting_id: int, now: Optional[datetime] = None
    ) -> Waiting:
        now = now or utcnow()
        async with self.booth_lock.hold(booth_id):
            waiting = await self._get(booth_id, waiting_id)
            self._require(waiting, WaitingStatus.ENTERED)

            applied = await compare_and_set(
                self.db,
                waiting.id,
                Event.COMPLETE,
                completed_at=now,
                completion_type=CompletionType.ENTERED,
            )
            if not applied:
                await self._lost_race(waiting)
            try:
                await self.registry.decrement_occupancy(booth_id)
                await self.stats.record(booth_id, StatEvent.COMPLETED, now)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            await self.db.refresh(waiting)
            logger.info(f"Waiting {waiting.id} completed at booth {booth_id}")
            return waiting

    async def expire(
        self, waiting_id: int, booth_id: int, now: Optional[datetime] = None
    ) -> bool:
        """CALLED -> NO_SHOW. Returns False when the waiting was already moved on."""
        now = now or utcnow()
        applied = await compare_and_set(
            self.db,
            waiting_id,
            Event.EXPIRE,
            completed_at=now,
            completion_type=CompletionType.NO_SHOW,
        )
        if not applied:
            await self.db.rollback()
            return False
        try:
            await self.stats.record(booth_id, StatEvent.NO_SHOW, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Waiting {waiting_id} at booth {booth_id} marked NO_SHOW")
        return True

    async def _get(self, booth_id: int, waiting_id: int) -> Waiting:
        waiting = await self.db.get(Waiting, waiting_id, populate_existing=True)
        if waiting is None or waiting.booth_id != booth_id:
            raise NotFound("Waiting not found", boothId=booth_id, waitingId=waiting_id)
        return waiting

    def _require(self, waiting: Waiting, status: WaitingStatus) -> None:
        if waiting.status != status:
            raise InvalidState(
                waitingId=waiting.id, status=waiting.status.value, expected=status.value
            )

    async def _lost_race(self, waiting: Waiting):
        await self.db.rollback()
        await self.db.refresh(waiting)
        raise InvalidState(waitingId=waiting.id, status=waiting.status.value)
