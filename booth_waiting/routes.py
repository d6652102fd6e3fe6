from typing import Optional

import redis.asyncio as redis
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting import auth
from booth_waiting.auth import ensure_manages, get_current_staff, get_current_user
from booth_waiting.database import get_db
from booth_waiting.errors import NotFound
from booth_waiting.ledger import QueueLedger, WaitingSnapshot
from booth_waiting.models import Booth, User, Waiting, WaitingStatus
from booth_waiting.redis import get_redis
from booth_waiting.schemas import (
    BoothListResponse,
    BoothResponse,
    BoothStatusResponse,
    BoothStatusUpdate,
    CalledListResponse,
    CallRequest,
    LoginRequest,
    LoginResponse,
    MyWaitingsResponse,
    TodayStatsSchema,
    WaitingHistoryResponse,
    WaitingRequest,
    WaitingResponse,
)
from booth_waiting.state_machine import WaitingStateMachine
from booth_waiting.stats import StatsAggregator
from booth_waiting.timeutil import utcnow

router = APIRouter(prefix="/api/v1")


async def booth_response(ledger: QueueLedger, booth: Booth) -> BoothResponse:
    total = await ledger.total_waiting(booth.id)
    return BoothResponse(
        boothId=booth.id,
        boothName=booth.name,
        description=booth.description,
        universityId=booth.university_id,
        universityName=booth.university_name,
        status=booth.status,
        capacity=booth.capacity,
        currentPeople=booth.current_people,
        totalWaiting=total,
        currentWaiting=total,
        estimatedWaitTime=await ledger.estimate_wait_minutes(booth, total),
        openTime=booth.open_time,
        closeTime=booth.close_time,
    )


async def waiting_response(ledger: QueueLedger, snapshot: WaitingSnapshot) -> WaitingResponse:
    waiting = snapshot.entry
    booth = await ledger.registry.get(waiting.booth_id)
    return WaitingResponse(
        waitingId=waiting.id,
        boothId=waiting.booth_id,
        boothName=booth.name,
        position=snapshot.position,
        totalWaiting=snapshot.total_waiting,
        estimatedWaitTime=snapshot.estimated_wait_time,
        registeredAt=waiting.registered_at,
        status=waiting.status,
        calledAt=waiting.called_at,
        remainingTime=snapshot.remaining_time,
    )


async def history_response(
    db: AsyncSession, ledger: QueueLedger, waiting: Waiting
) -> WaitingHistoryResponse:
    user = await db.get(User, waiting.user_id)
    remaining = None
    if waiting.status == WaitingStatus.CALLED:
        remaining = ledger.remaining_seconds(waiting, utcnow())
    return WaitingHistoryResponse(
        waitingId=waiting.id,
        userId=waiting.user_id,
        nickname=user.nickname if user else None,
        boothId=waiting.booth_id,
        position=waiting.sequence,
        status=waiting.status,
        calledAt=waiting.called_at,
        enteredAt=waiting.entered_at,
        completedAt=waiting.completed_at,
        completionType=waiting.completion_type,
        remainingTime=remaining,
    )


# ---------------------------------------------------------------- auth


@router.post("/auth/login", response_model=LoginResponse)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await auth.login(
        db, request.email, request.nickname, request.role, request.managedBoothId
    )
    return LoginResponse(
        userId=user.id,
        email=user.email,
        nickname=user.nickname,
        role=user.role,
        boothId=user.managed_booth_id,
        accessToken=user.access_token,
    )


# ---------------------------------------------------------------- booths


@router.get("/booths", response_model=BoothListResponse)
async def list_booths(
    universityId: Optional[int] = None,
    universityName: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ledger = QueueLedger(db, redis_client)
    booths = await ledger.registry.list_booths(universityName, universityId)
    return BoothListResponse(booths=[await booth_response(ledger, b) for b in booths])


@router.get("/booths/{booth_id}", response_model=BoothResponse)
async def get_booth(
    booth_id: int,
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ledger = QueueLedger(db, redis_client)
    return await booth_response(ledger, await ledger.registry.get(booth_id))


@router.patch("/booths/{booth_id}/status", response_model=BoothResponse)
async def update_booth_status(
    booth_id: int,
    request: BoothStatusUpdate,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, booth_id)
    ledger = QueueLedger(db, redis_client)
    booth = await ledger.registry.set_status(booth_id, request.status)
    return await booth_response(ledger, booth)


@router.get("/booths/{booth_id}/status", response_model=BoothStatusResponse)
async def get_booth_status(
    booth_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, booth_id)
    ledger = QueueLedger(db, redis_client)
    booth = await ledger.registry.get(booth_id)
    today = await StatsAggregator(db).today(booth_id)
    return BoothStatusResponse(
        boothId=booth.id,
        boothName=booth.name,
        status=booth.status,
        currentPeople=booth.current_people,
        capacity=booth.capacity,
        totalWaiting=await ledger.total_waiting(booth_id),
        todayStats=TodayStatsSchema(
            totalCalled=today.total_called,
            totalEntered=today.total_entered,
            totalNoShow=today.total_no_show,
            totalCompleted=today.total_completed,
        ),
    )


@router.get("/booths/{booth_id}/called-list", response_model=CalledListResponse)
async def get_called_list(
    booth_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, booth_id)
    ledger = QueueLedger(db, redis_client)
    await ledger.registry.get(booth_id)
    return CalledListResponse(
        calledList=[
            await history_response(db, ledger, w) for w in await ledger.called_list(booth_id)
        ]
    )


@router.post("/booths/{booth_id}/entrance/{waiting_id}", response_model=WaitingHistoryResponse)
async def confirm_entrance(
    booth_id: int,
    waiting_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, booth_id)
    machine = WaitingStateMachine(db, redis_client)
    waiting = await machine.confirm_entrance(booth_id, waiting_id)
    return await history_response(db, machine.ledger, waiting)


@router.post("/booths/{booth_id}/complete/{waiting_id}", response_model=WaitingHistoryResponse)
async def complete_experience(
    booth_id: int,
    waiting_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, booth_id)
    machine = WaitingStateMachine(db, redis_client)
    waiting = await machine.complete_experience(booth_id, waiting_id)
    return await history_response(db, machine.ledger, waiting)


# ---------------------------------------------------------------- waitings


@router.post("/waitings", response_model=WaitingResponse)
async def add_waiting(
    request: WaitingRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ledger = QueueLedger(db, redis_client)
    waiting = await ledger.enqueue(request.boothId, user.id)
    return await waiting_response(ledger, await ledger.snapshot(waiting))


@router.get("/waitings/my", response_model=MyWaitingsResponse)
async def get_my_waitings(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ledger = QueueLedger(db, redis_client)
    snapshots = await ledger.my_waitings(user.id)
    return MyWaitingsResponse(waitings=[await waiting_response(ledger, s) for s in snapshots])


@router.get("/waitings/booth/{booth_id}", response_model=WaitingResponse)
async def get_my_position(
    booth_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ledger = QueueLedger(db, redis_client)
    waiting = await ledger.active_entry(booth_id, user.id)
    if waiting is None:
        raise NotFound("Waiting not found", boothId=booth_id)
    return await waiting_response(ledger, await ledger.snapshot(waiting))


@router.delete("/waitings/{booth_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_waiting(
    booth_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    await QueueLedger(db, redis_client).cancel(booth_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/waitings/call", response_model=WaitingHistoryResponse)
async def call_next(
    request: CallRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    ensure_manages(staff, request.boothId)
    machine = WaitingStateMachine(db, redis_client)
    waiting = await machine.call_next(request.boothId)
    return await history_response(db, machine.ledger, waiting)
