# default
import logging
import random
import string

# pip
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from booth_waiting.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, echo=settings.debug, pool_pre_ping=True)
async_session = async_sessionmaker(engine, expire_on_commit=False)
Base = declarative_base()


async def get_db():
    async with async_session() as session:
        yield session


def random_booth_name():
    return "Booth-" + "".join(random.choices(string.ascii_letters, k=5))


async def initialize_database(drop: bool = False):
    # models must be registered on Base.metadata before create_all
    from booth_waiting import models  # noqa: F401

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def seed_demo_booths(session: AsyncSession, count: int) -> int:
    """Insert ``count`` open demo booths when the booth table is empty."""
    from booth_waiting.models import Booth, BoothStatus

    existing = await session.execute(select(Booth.id).limit(1))
    if existing.first() is not None:
        return 0

    session.add_all(
        Booth(
            name=random_booth_name(),
            university_id=1,
            university_name="Demo University",
            status=BoothStatus.OPEN,
            capacity=random.randint(2, 10),
        )
        for _ in range(count)
    )
    await session.commit()
    logger.info(f"Seeded {count} demo booths")
    return count
