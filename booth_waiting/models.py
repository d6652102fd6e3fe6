import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)

from booth_waiting.database import Base


class BoothStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class UserRole(str, enum.Enum):
    VISITOR = "VISITOR"
    STAFF = "STAFF"


class WaitingStatus(str, enum.Enum):
    WAITING = "WAITING"
    CALLED = "CALLED"
    ENTERED = "ENTERED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


class CompletionType(str, enum.Enum):
    ENTERED = "ENTERED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = (WaitingStatus.WAITING, WaitingStatus.CALLED, WaitingStatus.ENTERED)
_ACTIVE_SQL = "status IN ('WAITING', 'CALLED', 'ENTERED')"


class Booth(Base):
    __tablename__ = "booths"
    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_booths_capacity_positive"),
        CheckConstraint(
            "current_people >= 0 AND current_people <= capacity",
            name="ck_booths_occupancy_within_capacity",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    university_id = Column(Integer, nullable=True, index=True)
    university_name = Column(String, nullable=False, default="", index=True)
    status = Column(Enum(BoothStatus), nullable=False, default=BoothStatus.CLOSED)
    capacity = Column(Integer, nullable=False, default=1)
    current_people = Column(Integer, nullable=False, default=0)
    # enqueue sequence handed to the next waiting at this booth
    next_sequence = Column(Integer, nullable=False, default=1)
    open_time = Column(String, nullable=True)
    close_time = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    nickname = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.VISITOR)
    managed_booth_id = Column(Integer, ForeignKey("booths.id"), nullable=True)
    access_token = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Waiting(Base):
    __tablename__ = "waitings"
    __table_args__ = (
        UniqueConstraint("booth_id", "sequence", name="uq_waitings_booth_sequence"),
        Index("ix_waitings_booth_status_sequence", "booth_id", "status", "sequence"),
        Index(
            "uq_waitings_active_user_booth",
            "booth_id",
            "user_id",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    booth_id = Column(Integer, ForeignKey("booths.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    status = Column(Enum(WaitingStatus), nullable=False, default=WaitingStatus.WAITING)
    registered_at = Column(DateTime(timezone=True), nullable=False)
    called_at = Column(DateTime(timezone=True), nullable=True)
    entered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completion_type = Column(Enum(CompletionType), nullable=True)


class BoothDailyStats(Base):
    __tablename__ = "booth_daily_stats"
    __table_args__ = (
        UniqueConstraint("booth_id", "stat_date", name="uq_booth_daily_stats_day"),
    )

    id = Column(Integer, primary_key=True)
    booth_id = Column(Integer, ForeignKey("booths.id"), nullable=False, index=True)
    stat_date = Column(Date, nullable=False)
    total_called = Column(Integer, nullable=False, default=0)
    total_entered = Column(Integer, nullable=False, default=0)
    total_completed = Column(Integer, nullable=False, default=0)
    total_no_show = Column(Integer, nullable=False, default=0)
