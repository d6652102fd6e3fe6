"""Waiting lifecycle transitions.

State flow:
WAITING -> CALLED (staff call-next)
CALLED -> ENTERED (staff confirms entrance)
CALLED -> NO_SHOW (call deadline elapsed)
ENTERED -> COMPLETED (staff completes the experience)
WAITING -> CANCELLED (visitor cancels)

Every status change is a compare-and-set on the current status, so two
racing transitions on the same waiting can never both apply.
"""

import logging
from typing import Dict, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from booth_waiting.models import Waiting, WaitingStatus

logger = logging.getLogger(__name__)


class Event:
    CALL = "call"
    ENTER = "enter"
    EXPIRE = "expire"
    COMPLETE = "complete"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[WaitingStatus, str], WaitingStatus] = {
    (WaitingStatus.WAITING, Event.CALL): WaitingStatus.CALLED,
    (WaitingStatus.WAITING, Event.CANCEL): WaitingStatus.CANCELLED,
    (WaitingStatus.CALLED, Event.ENTER): WaitingStatus.ENTERED,
    (WaitingStatus.CALLED, Event.EXPIRE): WaitingStatus.NO_SHOW,
    (WaitingStatus.ENTERED, Event.COMPLETE): WaitingStatus.COMPLETED,
}

TERMINAL_STATUSES = frozenset(
    {WaitingStatus.COMPLETED, WaitingStatus.NO_SHOW, WaitingStatus.CANCELLED}
)


def source_state(event: str) -> WaitingStatus:
    for (source, ev), _ in TRANSITIONS.items():
        if ev == event:
            return source
    raise KeyError(event)


def target_state(source: WaitingStatus, event: str) -> WaitingStatus:
    return TRANSITIONS[(source, event)]


async def compare_and_set(
    db: AsyncSession, waiting_id: int, event: str, **stamps
) -> bool:
    """Apply ``event`` to a waiting only if it is still in the event's source state.

    Returns False when another transition got there first. The caller owns the
    transaction.
    """
    expected = source_state(event)
    new_status = target_state(expected, event)
    result = await db.execute(
        update(Waiting)
        .where(Waiting.id == waiting_id, Waiting.status == expected)
        .values(status=new_status, **stamps)
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    if not applied:
        logger.debug(f"Transition {event} skipped for waiting {waiting_id}: not {expected.value}")
    return applied
