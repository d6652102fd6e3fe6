import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.config import Settings, settings as default_settings
from booth_waiting.models import BoothDailyStats
from booth_waiting.timeutil import local_date, utcnow


class StatEvent(str, enum.Enum):
    CALLED = "total_called"
    ENTERED = "total_entered"
    COMPLETED = "total_completed"
    NO_SHOW = "total_no_show"


@dataclass
class TodayStats:
    total_called: int = 0
    total_entered: int = 0
    total_completed: int = 0
    total_no_show: int = 0


class StatsAggregator:
    """Per-booth daily counters, one row per booth and local date.

    ``record`` joins the caller's transaction, so a counter moves exactly when
    the transition that caused it commits.
    """

    def __init__(self, db: AsyncSession, settings: Settings = default_settings):
        self.db = db
        self.settings = settings

    async def record(self, booth_id: int, event: StatEvent, at: datetime) -> None:
        stat_date = local_date(at, self.settings.stats_timezone)
        await self._ensure_row(booth_id, stat_date)
        column = getattr(BoothDailyStats, event.value)
        await self.db.execute(
            update(BoothDailyStats)
            .where(
                BoothDailyStats.booth_id == booth_id,
                BoothDailyStats.stat_date == stat_date,
            )
            .values({event.value: column + 1})
            .execution_options(synchronize_session=False)
        )

    async def today(self, booth_id: int, now: Optional[datetime] = None) -> TodayStats:
        stat_date = local_date(now or utcnow(), self.settings.stats_timezone)
        result = await self.db.execute(
            select(BoothDailyStats)
            .where(
                BoothDailyStats.booth_id == booth_id,
                BoothDailyStats.stat_date == stat_date,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return TodayStats()
        return TodayStats(
            total_called=row.total_called,
            total_entered=row.total_entered,
            total_completed=row.total_completed,
            total_no_show=row.total_no_show,
        )

    async def _ensure_row(self, booth_id: int, stat_date) -> None:
        exists = await self.db.execute(
            select(BoothDailyStats.id).where(
                BoothDailyStats.booth_id == booth_id,
                BoothDailyStats.stat_date == stat_date,
            )
        )
        if exists.first() is not None:
            return
        try:
            async with self.db.begin_nested():
                self.db.add(BoothDailyStats(booth_id=booth_id, stat_date=stat_date))
        except IntegrityError:
            # another writer created today's row first
            pass
