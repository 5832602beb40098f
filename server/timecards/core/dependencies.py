from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from uuid import UUID
from fastapi import Depends, Header, HTTPException, status

from timecards.core.config import settings
from timecards.core.database import AsyncSessionLocal
from timecards.core.error_handling import parse_uuid
from timecards.models.timecard import Timecard
from timecards.services.lifecycle_service import ActorContext
from timecards.services.notification_service import NotificationSink, default_sink
from timecards.services.policy import TimecardPolicy


@dataclass(frozen=True)
class Actor:
    """Caller identity as asserted by the upstream authorization layer."""

    actor_id: UUID
    can_approve: bool = False

    def context_for(self, record: Optional[Timecard] = None, worker_id: Optional[UUID] = None) -> ActorContext:
        """Build the engine context: ownership is decided against the record's worker."""
        owner_id = record.worker_id if record is not None else worker_id
        return ActorContext(
            actor_id=self.actor_id,
            is_owner=owner_id is not None and owner_id == self.actor_id,
            can_approve=self.can_approve,
        )


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_can_approve: bool = Header(False),
) -> Actor:
    """Read the acting user from request headers."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required",
        )
    return Actor(actor_id=parse_uuid(x_actor_id.strip(), "actor ID"), can_approve=x_actor_can_approve)


async def get_approver(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """Require approval capability."""
    if not actor.can_approve:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Approval capability required",
        )
    return actor


@lru_cache
def get_policy() -> TimecardPolicy:
    return TimecardPolicy.from_settings(settings)


def get_notifier() -> NotificationSink:
    return default_sink


def get_session_factory():
    return AsyncSessionLocal
