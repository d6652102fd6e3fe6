import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from booth_waiting.config import settings
from booth_waiting.database import async_session, engine, initialize_database, seed_demo_booths
from booth_waiting.errors import WaitingError
from booth_waiting.ledger import QueueLedger
from booth_waiting.logger import RequestLoggingMiddleware, configure_logging
from booth_waiting.redis import get_redis_session, pool
from booth_waiting.routes import router
from booth_waiting.sweeper import ExpirySweeper

configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await initialize_database(drop=settings.reset_on_startup)

    redis_session = await get_redis_session()
    async with async_session() as session:
        if settings.seed_demo_booths:
            await seed_demo_booths(session, settings.seed_demo_booths)
        # waiting state lives in the database; rebuild the rank index from it
        indexed = await QueueLedger(session, redis_session).reconcile()
    logger.info(f"Rank index rebuilt with {indexed} waiting entries")

    sweeper = ExpirySweeper(async_session, redis_session)
    sweeper_task = asyncio.create_task(sweeper.run())

    yield

    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await redis_session.aclose()
    await pool.disconnect()
    await engine.dispose()
    logger.info("Booth waiting server stopped")


app = FastAPI(title="Booth Waiting Server", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)


@app.exception_handler(WaitingError)
async def waiting_error_handler(request: Request, exc: WaitingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
