"""Caller identity: an opaque id and a role.

``POST /auth/login`` upserts a user by email and hands back an opaque token.
Every other request presents it as a bearer token. There is no password and
the token carries no claims; it only names a ``users`` row.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.database import get_db
from booth_waiting.errors import Forbidden, NotFound, Unauthenticated
from booth_waiting.models import Booth, User, UserRole

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


async def login(
    db: AsyncSession,
    email: str,
    nickname: Optional[str],
    role: UserRole,
    managed_booth_id: Optional[int] = None,
) -> User:
    if managed_booth_id is not None and await db.get(Booth, managed_booth_id) is None:
        raise NotFound("Booth not found", boothId=managed_booth_id)

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=email, access_token=secrets.token_urlsafe(32))
        db.add(user)
        logger.info(f"Registered {role.value} {email}")

    user.nickname = nickname or user.nickname
    user.role = role
    user.managed_booth_id = managed_booth_id if role == UserRole.STAFF else None
    await db.commit()
    await db.refresh(user)
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
) -> User:
    if credentials is None:
        raise Unauthenticated()
    result = await db.execute(select(User).where(User.access_token == credentials.credentials))
    user = result.scalar_one_or_none()
    if user is None:
        raise Unauthenticated()
    return user


async def get_current_staff(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.STAFF:
        raise Forbidden("Staff only")
    return user


def ensure_manages(staff: User, booth_id: int) -> None:
    if staff.managed_booth_id is not None and staff.managed_booth_id != booth_id:
        raise Forbidden(boothId=booth_id, managedBoothId=staff.managed_booth_id)
