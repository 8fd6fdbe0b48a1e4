"""Inbound profile system events.

The profile system reports completeness changes here when it cannot publish
onto the in-process bus directly. Only an administrator (or a gateway service
principal flagged as admin) may post events.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, status

from docintake.api.dependencies import Services
from docintake.api.middleware import AdminPrincipal
from docintake.api.schemas import EventAcceptedResponse, ProfileCompletedRequest
from docintake.services.events import ProfileCompletionEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.post(
    "/profile-completed",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def profile_completed(
    request: ProfileCompletedRequest,
    admin: AdminPrincipal,
    services: Services,
) -> EventAcceptedResponse:
    """Queue a profile:completed event for the reconciler."""
    event = ProfileCompletionEvent(
        owner_id=request.owner_id,
        role=request.role,
        profile_completed=request.profile_completed,
        completion_percentage=request.completion_percentage,
        timestamp=request.timestamp or datetime.now(UTC),
    )
    services.bus.publish(event)
    logger.info(
        "Profile event accepted for %s (completed=%s) from %s",
        event.owner_id,
        event.profile_completed,
        admin.principal_id,
    )
    return EventAcceptedResponse(topic=event.topic.value, owner_id=event.owner_id)
