import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.config import Settings, settings as default_settings
from booth_waiting.errors import CapacityExceeded, NotFound
from booth_waiting.models import Booth, BoothStatus, Waiting, WaitingStatus

logger = logging.getLogger(__name__)


class BoothRegistry:
    """Authoritative booth status, capacity and occupancy.

    Occupancy is only changed by the state machine, through conditional
    updates that can never push ``current_people`` outside ``[0, capacity]``.
    """

    def __init__(self, db: AsyncSession, settings: Settings = default_settings):
        self.db = db
        self.settings = settings

    async def get(self, booth_id: int) -> Booth:
        booth = await self.db.get(Booth, booth_id, populate_existing=True)
        if booth is None:
            raise NotFound("Booth not found", boothId=booth_id)
        return booth

    async def list_booths(
        self, university_name: Optional[str] = None, university_id: Optional[int] = None
    ) -> List[Booth]:
        query = select(Booth).order_by(Booth.id)
        if university_name:
            query = query.where(Booth.university_name == university_name)
        if university_id is not None:
            query = query.where(Booth.university_id == university_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def is_open(self, booth_id: int) -> bool:
        booth = await self.get(booth_id)
        return booth.status == BoothStatus.OPEN

    async def has_capacity(self, booth_id: int) -> bool:
        booth = await self.get(booth_id)
        return booth.current_people < booth.capacity

    async def outstanding_calls(self, booth_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Waiting.id)).where(
                Waiting.booth_id == booth_id, Waiting.status == WaitingStatus.CALLED
            )
        )
        return result.scalar_one()

    async def call_slots(self, booth_id: int) -> int:
        """How many more visitors may be called right now."""
        booth = await self.get(booth_id)
        slots = booth.capacity - booth.current_people
        if self.settings.reserve_capacity_on_call:
            slots -= await self.outstanding_calls(booth_id)
        return slots

    async def take_sequence(self, booth_id: int) -> int:
        """Hand out the booth's next enqueue sequence in one UPDATE ... RETURNING."""
        result = await self.db.execute(
            update(Booth)
            .where(Booth.id == booth_id)
            .values(next_sequence=Booth.next_sequence + 1)
            .returning(Booth.next_sequence)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one() - 1

    async def increment_occupancy(self, booth_id: int) -> None:
        result = await self.db.execute(
            update(Booth)
            .where(Booth.id == booth_id, Booth.current_people < Booth.capacity)
            .values(current_people=Booth.current_people + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CapacityExceeded(boothId=booth_id)

    async def decrement_occupancy(self, booth_id: int) -> None:
        result = await self.db.execute(
            update(Booth)
            .where(Booth.id == booth_id, Booth.current_people > 0)
            .values(current_people=Booth.current_people - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Occupancy of booth {booth_id} already at zero")

    async def set_status(self, booth_id: int, status: BoothStatus) -> Booth:
        booth = await self.get(booth_id)
        if booth.status != status:
            booth.status = status
            await self.db.commit()
            logger.info(f"Booth {booth_id} is now {status.value}")
        return booth
