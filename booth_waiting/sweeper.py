import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from booth_waiting.config import Settings, settings as default_settings
from booth_waiting.ledger import QueueLedger
from booth_waiting.locks import KeyedLock, booth_locks
from booth_waiting.models import Waiting, WaitingStatus
from booth_waiting.state_machine import WaitingStateMachine
from booth_waiting.timeutil import utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Turns CALLED waitings into NO_SHOW once their call deadline passes.

    Runs on its own tick, independent of any request. A failed tick is logged
    and simply retried on the next one; the status compare-and-set keeps a
    late tick from expiring anything twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis_client: redis.Redis,
        settings: Settings = default_settings,
        booth_lock: KeyedLock = booth_locks,
    ):
        self.session_factory = session_factory
        self.redis = redis_client
        self.settings = settings
        self.booth_lock = booth_lock

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.call_timeout_seconds)
        expired = 0

        async with self.session_factory() as db:
            result = await db.execute(
                select(Waiting.id, Waiting.booth_id)
                .where(Waiting.status == WaitingStatus.CALLED, Waiting.called_at <= cutoff)
                .order_by(Waiting.called_at)
            )
            overdue = result.all()
            if not overdue:
                return 0

            machine = WaitingStateMachine(db, self.redis, self.settings, self.booth_lock)
            for waiting_id, booth_id in overdue:
                try:
                    if await machine.expire(waiting_id, booth_id, now):
                        expired += 1
                except Exception:
                    logger.exception(f"Failed to expire waiting {waiting_id}, retrying next tick")

        return expired

    async def reconcile(self) -> int:
        async with self.session_factory() as db:
            indexed = await QueueLedger(
                db, self.redis, self.settings, booth_lock=self.booth_lock
            ).reconcile()
        logger.debug(f"Rank index reconciled ({indexed} waiting entries)")
        return indexed

    async def run(self) -> None:
        logger.info(
            f"Expiry sweeper started (tick {self.settings.sweep_interval_seconds}s, "
            f"call timeout {self.settings.call_timeout_seconds}s)"
        )
        loop = asyncio.get_running_loop()
        last_reconcile = loop.time()
        while True:
            try:
                expired = await self.sweep_once()
                if expired:
                    logger.info(f"Expired {expired} called waitings as NO_SHOW")
                if loop.time() - last_reconcile >= self.settings.index_reconcile_seconds:
                    await self.reconcile()
                    last_reconcile = loop.time()
            except Exception:
                logger.exception("Expiry sweep failed, retrying next tick")
            await asyncio.sleep(self.settings.sweep_interval_seconds)
