from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from booth_waiting.models import BoothStatus, CompletionType, UserRole, WaitingStatus
from booth_waiting.timeutil import as_utc


# storage may hand back naive datetimes; they are UTC
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ApiModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: str = Field(min_length=3)
    nickname: Optional[str] = None
    role: UserRole = UserRole.VISITOR
    managedBoothId: Optional[int] = None


class LoginResponse(ApiModel):
    userId: int
    email: str
    nickname: Optional[str] = None
    role: UserRole
    boothId: Optional[int] = None
    accessToken: str


class WaitingRequest(BaseModel):
    boothId: int


class CallRequest(BaseModel):
    boothId: int


class BoothStatusUpdate(BaseModel):
    status: BoothStatus


class BoothResponse(ApiModel):
    boothId: int
    boothName: str
    description: Optional[str] = None
    universityId: Optional[int] = None
    universityName: str
    status: BoothStatus
    capacity: int
    currentPeople: int
    totalWaiting: int
    # the booth list endpoint historically called this field currentWaiting
    currentWaiting: int
    estimatedWaitTime: int
    openTime: Optional[str] = None
    closeTime: Optional[str] = None


class BoothListResponse(ApiModel):
    booths: List[BoothResponse]


class TodayStatsSchema(ApiModel):
    totalCalled: int = 0
    totalEntered: int = 0
    totalNoShow: int = 0
    totalCompleted: int = 0


class BoothStatusResponse(ApiModel):
    boothId: int
    boothName: str
    status: BoothStatus
    currentPeople: int
    capacity: int
    totalWaiting: int
    todayStats: TodayStatsSchema


class WaitingResponse(ApiModel):
    waitingId: int
    boothId: int
    boothName: str
    position: int
    totalWaiting: int
    estimatedWaitTime: int
    registeredAt: UtcDatetime
    status: WaitingStatus
    calledAt: Optional[UtcDatetime] = None
    remainingTime: Optional[int] = None


class MyWaitingsResponse(ApiModel):
    waitings: List[WaitingResponse]


class WaitingHistoryResponse(ApiModel):
    waitingId: int
    userId: int
    nickname: Optional[str] = None
    boothId: int
    # the waiting number handed out at enqueue time
    position: int
    status: WaitingStatus
    calledAt: Optional[UtcDatetime] = None
    enteredAt: Optional[UtcDatetime] = None
    completedAt: Optional[UtcDatetime] = None
    completionType: Optional[CompletionType] = None
    remainingTime: Optional[int] = None


class CalledListResponse(ApiModel):
    calledList: List[WaitingHistoryResponse]
